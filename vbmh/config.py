"""Configuration loading and environment variable parsing for vbmh-lab.

Values are layered, lowest precedence first: built-in defaults, an optional
YAML file, environment variables, then explicit overrides (CLI flags).
"""

from __future__ import annotations

import re
from ipaddress import ip_address, ip_network
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vbmh import constants as c
from vbmh.exceptions import ManagerError, UnsupportedBmcProtocol
from vbmh.models import LabConfig, NetworkDescriptor
from vbmh.utils import get_env, parse_bool, parse_int, validate_disk_size

# option name -> (environment variable, default)
OPTIONS: Dict[str, tuple] = {
    "vm_count": ("VM_COUNT", c.DEFAULT_VM_COUNT),
    "vm_prefix": ("VM_PREFIX", c.DEFAULT_VM_PREFIX),
    "disk_size": ("DISK_SIZE", c.DEFAULT_DISK_SIZE),
    "memory_mb": ("MEMORY", c.DEFAULT_MEMORY_MB),
    "cpus": ("CPUS", c.DEFAULT_CPUS),
    "network_name": ("NETWORK_NAME", c.DEFAULT_NETWORK_NAME),
    "network_bridge": ("NETWORK_BRIDGE", c.DEFAULT_NETWORK_BRIDGE),
    "network_subnet": ("NETWORK_SUBNET", c.DEFAULT_NETWORK_SUBNET),
    "pool_name": ("POOL_NAME", c.DEFAULT_POOL_NAME),
    "pool_path": ("POOL_PATH", str(c.DEFAULT_POOL_PATH)),
    "tpm": ("TPM", "0"),
    "airgap": ("AIRGAP", "0"),
    "airgap_filter": ("AIRGAP_FILTER", c.DEFAULT_AIRGAP_FILTER),
    "boot_mode": ("BOOT_MODE", "legacy"),
    "bmc_protocol": ("BMC_PROTOCOL", c.PROTOCOL_IPMI),
    "bmc_username": ("BMC_USERNAME", c.DEFAULT_BMC_USERNAME),
    "bmc_password": ("BMC_PASSWORD", c.DEFAULT_BMC_PASSWORD),
    "bmc_host": ("BMC_HOST", None),
    "bmc_base_port": ("BMC_BASE_PORT", str(c.BMC_BASE_PORT)),
    "ipmi_server_port": ("IPMI_SERVER_PORT", c.DEFAULT_IPMI_SERVER_PORT),
    "lab_dir": ("LAB_DIR", str(c.DEFAULT_LAB_DIR)),
    "libvirt_uri": ("LIBVIRT_URI", c.LIBVIRT_URI),
    "settle_timeout": ("SETTLE_TIMEOUT", c.SETTLE_TIMEOUT),
    "daemon_timeout": ("DAEMON_TIMEOUT", c.DAEMON_TIMEOUT),
    "require_k8s_tools": ("REQUIRE_K8S_TOOLS", "0"),
}

_PREFIX_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_BRIDGE_RE = re.compile(r"^[A-Za-z0-9_.-]{1,15}$")


def load_config_file(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ManagerError(f"Lab config missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Lab config {config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Lab config {config_path} must be a YAML mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(OPTIONS))
    if unknown:
        raise ManagerError(
            f"Unknown option(s) in {config_path}: {', '.join(unknown)}\n"
            f"  Supported: {', '.join(sorted(OPTIONS))}"
        )
    return data


def resolve_raw(
    file_values: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    for key, (env_name, default) in OPTIONS.items():
        value: Any = default
        if file_values and file_values.get(key) is not None:
            value = file_values[key]
        env_value = get_env(env_name)
        if env_value is not None and env_value.strip() != "":
            value = env_value
        if overrides and overrides.get(key) is not None:
            value = overrides[key]
        raw[key] = value
    return raw


def build_config(raw: Mapping[str, Any]) -> LabConfig:
    vm_count = parse_int("VM_COUNT", raw["vm_count"], min_val=1, max_val=c.MAX_VM_COUNT)

    vm_prefix = str(raw["vm_prefix"]).strip()
    if not _PREFIX_RE.match(vm_prefix):
        raise ManagerError(f"Invalid VM_PREFIX '{vm_prefix}'. Use letters, digits, '.', '_' or '-'")

    bridge = str(raw["network_bridge"]).strip()
    if not _BRIDGE_RE.match(bridge):
        raise ManagerError(f"Invalid NETWORK_BRIDGE '{bridge}' (at most 15 characters, no spaces)")
    subnet = str(raw["network_subnet"]).strip()
    try:
        parsed_subnet = ip_network(subnet, strict=False)
    except ValueError as exc:
        raise ManagerError(f"Invalid NETWORK_SUBNET '{subnet}': {exc}")
    if parsed_subnet.version != 4 or parsed_subnet.num_addresses < 4:
        raise ManagerError(f"NETWORK_SUBNET must be an IPv4 network with room for hosts (got {subnet})")
    network = NetworkDescriptor(name=str(raw["network_name"]).strip(), bridge=bridge, subnet=str(parsed_subnet))

    protocol = str(raw["bmc_protocol"]).strip().lower()
    if protocol not in c.SUPPORTED_BMC_PROTOCOLS:
        raise UnsupportedBmcProtocol(
            f"Unsupported BMC_PROTOCOL '{raw['bmc_protocol']}'. Supported: {', '.join(c.SUPPORTED_BMC_PROTOCOLS)}"
        )

    bmc_host = str(raw["bmc_host"]).strip() if raw["bmc_host"] else network.gateway
    try:
        ip_address(bmc_host)
    except ValueError:
        if not re.match(r"^[A-Za-z0-9.-]+$", bmc_host):
            raise ManagerError(f"Invalid BMC_HOST '{bmc_host}'")

    base_port = parse_int("BMC_BASE_PORT", raw["bmc_base_port"], min_val=1, max_val=65535 - vm_count)
    server_port = parse_int("IPMI_SERVER_PORT", raw["ipmi_server_port"], min_val=1, max_val=65535)
    if base_port < server_port <= base_port + vm_count:
        raise ManagerError(
            f"IPMI_SERVER_PORT {server_port} collides with BMC ports {base_port + 1}-{base_port + vm_count}"
        )

    boot_mode = str(raw["boot_mode"]).strip().lower()
    if boot_mode not in c.SUPPORTED_BOOT_MODES:
        supported = ", ".join(sorted(c.SUPPORTED_BOOT_MODES))
        raise ManagerError(f"Unsupported BOOT_MODE '{boot_mode}'. Supported: {supported}")

    username = str(raw["bmc_username"])
    password = str(raw["bmc_password"])
    if not username or ":" in username:
        raise ManagerError("BMC_USERNAME must be non-empty and must not contain ':'")
    if not password:
        raise ManagerError("BMC_PASSWORD must not be empty")

    return LabConfig(
        vm_count=vm_count,
        vm_prefix=vm_prefix,
        disk_size=validate_disk_size(str(raw["disk_size"]).strip()),
        memory_mb=parse_int("MEMORY", raw["memory_mb"], min_val=256),
        cpus=parse_int("CPUS", raw["cpus"]),
        network=network,
        pool_name=str(raw["pool_name"]).strip(),
        pool_path=Path(str(raw["pool_path"])).expanduser(),
        bmc_protocol=protocol,
        bmc_username=username,
        bmc_password=password,
        bmc_host=bmc_host,
        lab_dir=Path(str(raw["lab_dir"])).expanduser().resolve(),
        libvirt_uri=str(raw["libvirt_uri"]).strip(),
        tpm_enabled=parse_bool("TPM", raw["tpm"]),
        airgap_enabled=parse_bool("AIRGAP", raw["airgap"]),
        airgap_filter=str(raw["airgap_filter"]).strip(),
        boot_mode=boot_mode,
        bmc_base_port=base_port,
        ipmi_server_port=server_port,
        settle_timeout=float(parse_int("SETTLE_TIMEOUT", raw["settle_timeout"], min_val=0)),
        daemon_timeout=float(parse_int("DAEMON_TIMEOUT", raw["daemon_timeout"], min_val=1)),
        daemon_poll_interval=c.DAEMON_POLL_INTERVAL,
        require_k8s_tools=parse_bool("REQUIRE_K8S_TOOLS", raw["require_k8s_tools"]),
    )


def parse_env(config_path: Optional[Path] = None, overrides: Optional[Mapping[str, Any]] = None) -> LabConfig:
    file_values = load_config_file(config_path) if config_path is not None else None
    return build_config(resolve_raw(file_values, overrides))
