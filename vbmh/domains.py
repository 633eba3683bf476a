"""Fleet lifecycle for the simulated bare-metal domains."""

from __future__ import annotations

from typing import List, Optional
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

from vbmh.exceptions import DomainCreateError, NotFound, VirtError
from vbmh.models import Domain, LabConfig
from vbmh.network import render_interface_xml
from vbmh.storage import VolumeManager
from vbmh.utils import kvm_available, log, name_pattern, parse_size_to_bytes, wait_for
from vbmh.virt import Handle, VirtEntityClient


class DomainManager:
    def __init__(self, config: LabConfig, client: VirtEntityClient, volumes: VolumeManager) -> None:
        self.cfg = config
        self.client = client
        self.volumes = volumes
        self._kvm_available = kvm_available()

    # -- cleanup -----------------------------------------------------------

    def _owned(self, name: str) -> Optional[Handle]:
        """Return the handle of a fleet domain, or None if it belongs elsewhere."""
        try:
            handle = self.client.lookup("domain", name)
        except NotFound:
            return None
        tag = self.client.domain_tag(handle)
        if tag is not None and tag != str(self.cfg.lab_dir):
            log("WARN", f"Domain {name} belongs to lab {tag}; leaving it alone")
            return None
        return handle

    def destroy_running(self, prefix: Optional[str] = None) -> List[str]:
        prefix = prefix or self.cfg.vm_prefix
        stopped = []
        for name in self.client.list("domain", state="active", pattern=name_pattern(prefix)):
            handle = self._owned(name)
            if handle is None:
                continue
            try:
                self.client.destroy(handle)
            except NotFound:
                continue
            log("INFO", f"Destroyed domain {name}")
            stopped.append(name)
        return stopped

    def undefine_all(self, prefix: Optional[str] = None) -> List[str]:
        """Undefine every fleet domain. Running domains must be destroyed first."""
        prefix = prefix or self.cfg.vm_prefix
        removed = []
        for name in self.client.list("domain", pattern=name_pattern(prefix)):
            handle = self._owned(name)
            if handle is None:
                continue
            try:
                self.client.undefine(handle)
            except NotFound:
                continue
            log("INFO", f"Undefined domain {name}")
            removed.append(name)
        return removed

    # -- creation ----------------------------------------------------------

    def render_domain_xml(self, index: int) -> str:
        cfg = self.cfg
        domain = Element("domain", type="kvm" if self._kvm_available else "qemu")
        SubElement(domain, "name").text = cfg.domain_name(index)
        SubElement(domain, "memory", unit="MiB").text = str(cfg.memory_mb)
        SubElement(domain, "vcpu", placement="static").text = str(cfg.cpus)

        os_attrs = {"firmware": "efi"} if cfg.boot_mode == "uefi" else {}
        os_el = SubElement(domain, "os", **os_attrs)
        SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"

        features = SubElement(domain, "features")
        SubElement(features, "acpi")
        SubElement(features, "apic")
        if self._kvm_available:
            SubElement(domain, "cpu", mode="host-passthrough")

        devices = SubElement(domain, "devices")

        # Network first: the fleet PXE-boots, the disk is only a fallback.
        devices.append(
            fromstring(
                render_interface_xml(
                    cfg.network.name,
                    cfg.mac_address(index),
                    boot_order=1,
                    filter_name=cfg.airgap_filter if cfg.airgap_enabled else None,
                )
            )
        )

        disk = SubElement(devices, "disk", type="volume", device="disk")
        SubElement(disk, "driver", name="qemu", type="raw")
        SubElement(disk, "source", pool=cfg.pool_name, volume=cfg.volume_name(index))
        SubElement(disk, "target", dev="vda", bus="virtio")
        SubElement(disk, "boot", order="2")

        if cfg.tpm_enabled:
            tpm_el = SubElement(devices, "tpm", model="tpm-crb")
            SubElement(tpm_el, "backend", type="emulator", version="2.0")

        serial = SubElement(devices, "serial", type="pty")
        SubElement(serial, "target", port="0")
        console = SubElement(devices, "console", type="pty")
        SubElement(console, "target", type="serial", port="0")
        SubElement(devices, "graphics", type="vnc", autoport="yes", listen="127.0.0.1")
        video = SubElement(devices, "video")
        SubElement(video, "model", type="virtio", heads="1", primary="yes")

        from xml.dom.minidom import parseString

        raw = tostring(domain, encoding="unicode")
        return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()

    def create_fleet(self) -> List[Domain]:
        """Define, PXE-boot, settle and stop ``vm_count`` domains."""
        cfg = self.cfg
        size_bytes = parse_size_to_bytes(cfg.disk_size)
        fleet: List[Domain] = []
        created_volumes: List[str] = []
        created_domains: List[str] = []
        try:
            for index in cfg.indices:
                name = cfg.domain_name(index)
                volume = self.volumes.create(cfg.pool_name, cfg.volume_name(index), size_bytes)
                created_volumes.append(volume.name)
                try:
                    handle = self.client.define("domain", name, self.render_domain_xml(index))
                    created_domains.append(name)
                    self.client.set_domain_tag(
                        handle, str(cfg.lab_dir), prefix=cfg.vm_prefix, index=str(index)
                    )
                    self.client.start(handle)
                    uuid = self.client.handle_uuid(handle)
                except VirtError as exc:
                    raise DomainCreateError(str(exc)) from exc
                log("SUCCESS", f"Started domain {name} (mac {cfg.mac_address(index)})")
                fleet.append(Domain(name=name, index=index, mac=cfg.mac_address(index), volume=volume, uuid=uuid))
        except VirtError:
            self._rollback(created_domains, created_volumes)
            raise

        self.settle()
        self.stop_fleet()
        return fleet

    def _rollback(self, domains: List[str], volumes: List[str]) -> None:
        if not domains and not volumes:
            return
        log("WARN", f"Rolling back partial fleet: {', '.join(domains + volumes)}")
        for name in domains:
            try:
                handle = self.client.lookup("domain", name)
                self.client.destroy(handle)
                self.client.undefine(handle)
            except VirtError as exc:
                log("WARN", f"Rollback of domain {name} failed: {exc}")
        for name in volumes:
            try:
                self.client.undefine(self.client.lookup("volume", name, scope=self.cfg.pool_name))
            except VirtError as exc:
                log("WARN", f"Rollback of volume {name} failed: {exc}")

    def _fleet_active(self) -> List[str]:
        active = set(self.client.list("domain", state="active", pattern=name_pattern(self.cfg.vm_prefix)))
        return [name for name in self.cfg.domain_names if name in active]

    def settle(self) -> None:
        """Give the fleet time to attempt PXE; returns early once every domain stopped."""
        log("INFO", f"Waiting up to {self.cfg.settle_timeout:g}s for the fleet to attempt PXE boot")
        wait_for(lambda: not self._fleet_active(), timeout=self.cfg.settle_timeout, interval=1.0)

    def stop_fleet(self) -> None:
        for name in self._fleet_active():
            try:
                self.client.destroy(self.client.lookup("domain", name))
            except NotFound:
                continue
            except VirtError as exc:
                raise DomainCreateError(f"Failed to stop domain {name}: {exc}") from exc
            log("INFO", f"Stopped domain {name}")
        log("SUCCESS", f"Fleet of {self.cfg.vm_count} domain(s) defined and stopped")
