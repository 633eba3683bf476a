"""Storage pool and volume management for vbmh-lab."""

from __future__ import annotations

import textwrap
from pathlib import Path

from vbmh.exceptions import NotFound, PoolDefinitionError, VirtError, VolumeCreateError
from vbmh.models import Volume
from vbmh.utils import ensure_directory, log, name_pattern
from vbmh.virt import VirtEntityClient


def render_pool_xml(name: str, backing_path: Path) -> str:
    return textwrap.dedent(
        f"""
        <pool type='dir'>
          <name>{name}</name>
          <target>
            <path>{backing_path}</path>
          </target>
        </pool>
        """
    ).strip()


def render_volume_xml(name: str, size_bytes: int, fmt: str = "raw") -> str:
    return textwrap.dedent(
        f"""
        <volume>
          <name>{name}</name>
          <capacity unit='bytes'>{size_bytes}</capacity>
          <target>
            <format type='{fmt}'/>
          </target>
        </volume>
        """
    ).strip()


class StorageProvisioner:
    def __init__(self, client: VirtEntityClient) -> None:
        self.client = client

    def ensure_pool(self, name: str, backing_path: Path) -> None:
        if name in self.client.list("pool"):
            handle = self.client.lookup("pool", name)
            if self.client.is_active(handle):
                log("INFO", f"Storage pool {name} already exists")
                return
            log("INFO", f"Storage pool {name} defined but inactive; starting it")
        else:
            try:
                ensure_directory(backing_path)
            except OSError as exc:
                raise PoolDefinitionError(f"Cannot create pool directory {backing_path}: {exc}") from exc
            try:
                handle = self.client.define("pool", name, render_pool_xml(name, backing_path))
            except VirtError as exc:
                raise PoolDefinitionError(str(exc)) from exc
            try:
                self.client.build(handle)
            except VirtError as exc:
                log("WARN", f"Storage pool '{name}' build failed: {exc}")
            else:
                log("INFO", f"Created libvirt storage pool '{name}' ({backing_path})")

        try:
            self.client.start(handle)
            self.client.set_autostart(handle)
        except VirtError as exc:
            raise PoolDefinitionError(str(exc)) from exc
        log("SUCCESS", f"Storage pool {name} active")


class VolumeManager:
    def __init__(self, client: VirtEntityClient) -> None:
        self.client = client

    def delete_matching(self, pool: str, prefix: str) -> int:
        """Delete ``<prefix>-<n>`` volumes from an active pool. Returns the count."""
        if pool not in self.client.list("pool"):
            log("INFO", f"Storage pool {pool} not defined; no volumes to delete")
            return 0
        if pool in self.client.list("pool", state="inactive"):
            log("WARN", f"Storage pool {pool} is inactive; skipping volume cleanup")
            return 0

        deleted = 0
        for name in self.client.list("volume", scope=pool, pattern=name_pattern(prefix)):
            try:
                handle = self.client.lookup("volume", name, scope=pool)
                self.client.undefine(handle)
            except NotFound:
                log("DEBUG", f"Volume {name} already gone")
                continue
            log("INFO", f"Deleted volume {name} from pool {pool}")
            deleted += 1
        return deleted

    def create(self, pool: str, name: str, size_bytes: int, fmt: str = "raw") -> Volume:
        try:
            handle = self.client.define("volume", name, render_volume_xml(name, size_bytes, fmt), scope=pool)
            capacity, path = self.client.volume_info(handle)
        except VirtError as exc:
            raise VolumeCreateError(str(exc)) from exc
        log("INFO", f"Created volume {name} ({size_bytes} bytes) in pool {pool}")
        return Volume(name=name, pool=pool, capacity_bytes=capacity, path=path)
