"""Shared test fixtures and an in-memory libvirt client."""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import MagicMock, patch

import pytest

from vbmh.config import OPTIONS
from vbmh.exceptions import NotFound, VirtError
from vbmh.models import LabConfig, NetworkDescriptor
from vbmh.utils import trailing_index
from vbmh.virt import Handle

_CAPACITY_RE = re.compile(r"<capacity unit='bytes'>(\d+)</capacity>")


class FakeVirtClient:
    """Stands in for VirtEntityClient, keeping libvirt objects in a dict.

    ``fail(action, kind, name)`` makes the next matching call raise, which is
    how tests exercise the error paths of the provisioners.
    """

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, Optional[str], str], Dict[str, Any]] = {}
        self.failures: Dict[Tuple[str, str, str], Exception] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self._uuid_seq = 0

    # -- test helpers ------------------------------------------------------

    def fail(self, action: str, kind: str, name: str, exc: Optional[Exception] = None) -> None:
        self.failures[(action, kind, name)] = exc or VirtError(f"libvirt refused to {action} {kind} '{name}'")

    def add(self, kind, name, scope=None, active=False, tag=None, xml="") -> Dict[str, Any]:
        self._uuid_seq += 1
        record = {
            "kind": kind,
            "name": name,
            "scope": scope,
            "active": active,
            "autostart": False,
            "built": False,
            "xml": xml,
            "uuid": f"00000000-0000-4000-8000-{self._uuid_seq:012d}",
            "tag": tag,
            "capacity": 0,
        }
        self.objects[(kind, scope, name)] = record
        return record

    def record(self, kind, name, scope=None) -> Dict[str, Any]:
        return self.objects[(kind, scope, name)]

    def names(self, kind, scope=None) -> List[str]:
        return self.list(kind, scope=scope)

    def actions(self, action: str, kind: str) -> List[str]:
        return [name for act, k, name in self.calls if act == action and k == kind]

    def _check(self, action: str, kind: str, name: str) -> None:
        self.calls.append((action, kind, name))
        exc = self.failures.get((action, kind, name))
        if exc is not None:
            raise exc

    # -- VirtEntityClient surface -----------------------------------------

    def list(self, kind, scope=None, state="all", pattern=None) -> List[str]:
        if kind == "volume" and ("pool", None, scope) not in self.objects:
            raise NotFound(f"pool '{scope}' not found")
        names = [
            record["name"]
            for (k, s, _), record in self.objects.items()
            if k == kind and s == scope and (state == "all" or (state == "active") == record["active"])
        ]
        if pattern is not None:
            names = [name for name in names if pattern.match(name)]
        return sorted(names, key=lambda name: (trailing_index(name), name))

    def lookup(self, kind, name, scope=None) -> Handle:
        self._check("lookup", kind, name)
        record = self.objects.get((kind, scope, name))
        if record is None:
            raise NotFound(f"{kind} '{name}' not found")
        return Handle(kind, name, record)

    def exists(self, kind, name, scope=None) -> bool:
        return (kind, scope, name) in self.objects

    def define(self, kind, name, xml, scope=None) -> Handle:
        self._check("define", kind, name)
        if kind == "volume" and ("pool", None, scope) not in self.objects:
            raise NotFound(f"pool '{scope}' not found")
        record = self.objects.get((kind, scope, name))
        if record is None:
            record = self.add(kind, name, scope=scope, xml=xml)
        else:
            record["xml"] = xml
        match = _CAPACITY_RE.search(xml)
        if match:
            record["capacity"] = int(match.group(1))
        return Handle(kind, name, record)

    def build(self, handle) -> None:
        self._check("build", handle.kind, handle.name)
        handle.obj["built"] = True

    def is_active(self, handle) -> bool:
        if handle.kind in {"volume", "nwfilter"}:
            return True
        return handle.obj["active"]

    def start(self, handle) -> None:
        if self.is_active(handle):
            return
        self._check("start", handle.kind, handle.name)
        handle.obj["active"] = True

    def destroy(self, handle) -> None:
        if handle.kind in {"volume", "nwfilter"} or not handle.obj["active"]:
            return
        self._check("destroy", handle.kind, handle.name)
        handle.obj["active"] = False

    def undefine(self, handle) -> None:
        self._check("undefine", handle.kind, handle.name)
        key = (handle.kind, handle.obj["scope"], handle.name)
        if key not in self.objects:
            raise NotFound(f"{handle.kind} '{handle.name}' not found")
        del self.objects[key]

    def set_autostart(self, handle) -> None:
        self._check("autostart", handle.kind, handle.name)
        handle.obj["autostart"] = True

    def uuid(self, kind, name, scope=None) -> str:
        return self.handle_uuid(self.lookup(kind, name, scope))

    def handle_uuid(self, handle) -> str:
        return handle.obj["uuid"]

    def volume_info(self, handle) -> tuple:
        return handle.obj["capacity"], f"/pool/{handle.name}"

    def domain_tag(self, handle) -> Optional[str]:
        return handle.obj["tag"]

    def set_domain_tag(self, handle, lab_dir, **attrs) -> None:
        self._check("tag", handle.kind, handle.name)
        handle.obj["tag"] = lab_dir


@pytest.fixture
def fake_client() -> FakeVirtClient:
    return FakeVirtClient()


@pytest.fixture
def lab_config(tmp_path) -> LabConfig:
    """Return a small two-domain lab rooted in a temporary directory."""
    return LabConfig(
        vm_count=2,
        vm_prefix="vmok",
        disk_size="1G",
        memory_mb=2048,
        cpus=2,
        network=NetworkDescriptor(name="provisioning", bridge="provisioning", subnet="192.168.133.0/24"),
        pool_name="vbmh",
        pool_path=tmp_path / "pool",
        bmc_protocol="ipmi",
        bmc_username="admin",
        bmc_password="password",
        bmc_host="192.168.133.1",
        lab_dir=tmp_path / "lab",
        libvirt_uri="qemu:///system",
        settle_timeout=0.0,
        daemon_timeout=1.0,
        daemon_poll_interval=0.0,
    )


@pytest.fixture
def fake_tools():
    """Patch every external process the BMC backends launch.

    Yields the ``run`` and ``Popen`` mocks. ``openssl`` invocations write the
    key and certificate files they name so later chmod calls succeed.
    """

    def _run(cmd, check=True, **kwargs):
        if cmd[0] == "openssl":
            Path(cmd[cmd.index("-keyout") + 1]).write_text("key\n")
            Path(cmd[cmd.index("-out") + 1]).write_text("cert\n")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    pids = iter(range(4000, 5000))

    def _popen(cmd, **kwargs):
        proc = MagicMock()
        proc.pid = next(pids)
        proc.poll.return_value = None
        proc.returncode = None
        proc.args = cmd
        return proc

    with (
        patch("vbmh.bmc.run", side_effect=_run) as mock_run,
        patch("vbmh.bmc.subprocess.Popen", side_effect=_popen) as mock_popen,
        patch("vbmh.bmc.time.sleep"),
        patch("vbmh.bmc.terminate_pid", return_value=True),
        patch("vbmh.bmc.process_matches", return_value=True),
        patch("vbmh.bmc.find_processes", return_value=[]),
        patch("vbmh.bmc.hash_password", return_value="$2b$12$hash"),
    ):
        yield mock_run, mock_popen


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() and the pre-flight checks read.
_PARSE_ENV_VARS = [env_name for env_name, _default in OPTIONS.values()] + ["REQUIRE_KVM"]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear every lab variable, then point the lab and pool into tmp_path."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LAB_DIR", str(tmp_path / "lab"))
    monkeypatch.setenv("POOL_PATH", str(tmp_path / "pool"))


@pytest.fixture
def fake_bin(tmp_path, monkeypatch):
    """Install shell scripts into a directory placed first on PATH.

    Returns ``install(name, body)`` which writes an executable ``/bin/sh``
    script and returns its path.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def install(name: str, body: str) -> Path:
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body)
        script.chmod(0o755)
        return script

    return install
