"""Pre-flight checks run before a lab is reconciled.

These only verify the host; installing anything is left to the operator.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional

from vbmh.constants import (
    EXIT_NO_KUBECTL,
    EXIT_NO_KVM_SUPPORT,
    EXIT_NO_YQ,
    EXIT_PYTHON_PREREQUISITES,
    EXIT_UNSUPPORTED_OS,
    PROTOCOL_IPMI,
)
from vbmh.exceptions import ManagerError
from vbmh.models import LabConfig
from vbmh.utils import get_env_bool, kvm_available, log

OS_RELEASE = Path("/etc/os-release")
MIN_UBUNTU = (20, 4)


def read_os_release(path: Path = OS_RELEASE) -> Dict[str, str]:
    values: Dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return values
    for line in text.splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"')
    return values


def check_host_os(path: Path = OS_RELEASE) -> None:
    info = read_os_release(path)
    distro = info.get("ID", "unknown")
    version = info.get("VERSION_ID", "")
    if distro != "ubuntu":
        log("WARN", f"Host OS {distro} {version} is untested; Ubuntu 20.04+ is supported")
        return
    try:
        parsed = tuple(int(part) for part in version.split(".")[:2])
    except ValueError:
        log("WARN", f"Could not parse Ubuntu version '{version}'")
        return
    if parsed < MIN_UBUNTU:
        raise ManagerError(f"Ubuntu {version} is not supported (20.04 or newer required)", EXIT_UNSUPPORTED_OS)


def check_kvm() -> None:
    if kvm_available():
        log("INFO", "KVM support ok.")
        return
    if get_env_bool("REQUIRE_KVM", False):
        raise ManagerError(
            "REQUIRE_KVM=1 is set but /dev/kvm is not available. Enable virtualization in firmware "
            "or load the kvm module.",
            EXIT_NO_KVM_SUPPORT,
        )
    log("WARN", "KVM support is not enabled. Performance will be impacted.")


def required_tools(config: LabConfig) -> List[str]:
    if config.bmc_protocol == PROTOCOL_IPMI:
        return ["vbmc", "vbmcd"]
    return ["sushy-emulator", "openssl"]


def check_tools(config: LabConfig) -> None:
    missing = [tool for tool in required_tools(config) if shutil.which(tool) is None]
    if missing:
        raise ManagerError(
            f"Missing BMC tooling: {', '.join(missing)}. "
            "Install them (e.g. 'pip install --user virtualbmc sushy-tools') and rerun.",
            EXIT_PYTHON_PREREQUISITES,
        )
    if config.require_k8s_tools:
        _require_tool("kubectl", EXIT_NO_KUBECTL)
        _require_tool("yq", EXIT_NO_YQ)


def _require_tool(name: str, exit_code: int) -> None:
    if shutil.which(name) is None:
        raise ManagerError(f"Unable to find {name}. Install it manually and rerun.", exit_code)


def run_preflight(config: LabConfig, os_release: Optional[Path] = None) -> None:
    log("INFO", "=== Pre-flight checks ===")
    check_host_os(os_release or OS_RELEASE)
    check_kvm()
    check_tools(config)
