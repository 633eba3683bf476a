"""Data models for vbmh-lab."""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import IPv4Network, ip_network
from pathlib import Path
from typing import List, Optional

from vbmh.constants import BMC_BASE_PORT, MAC_PREFIX, VOLUME_PREFIX


@dataclass(frozen=True)
class NetworkDescriptor:
    name: str
    bridge: str
    subnet: str  # CIDR, e.g. 192.168.133.0/24

    @property
    def _network(self) -> IPv4Network:
        return ip_network(self.subnet, strict=False)  # type: ignore[return-value]

    @property
    def gateway(self) -> str:
        return str(next(self._network.hosts()))

    @property
    def netmask(self) -> str:
        return str(self._network.netmask)

    @property
    def network_address(self) -> str:
        return str(self._network.network_address)

    @property
    def prefixlen(self) -> int:
        return self._network.prefixlen


@dataclass(frozen=True)
class LabConfig:
    vm_count: int
    vm_prefix: str
    disk_size: str
    memory_mb: int
    cpus: int
    network: NetworkDescriptor
    pool_name: str
    pool_path: Path
    bmc_protocol: str
    bmc_username: str
    bmc_password: str
    bmc_host: str
    lab_dir: Path
    libvirt_uri: str
    tpm_enabled: bool = False
    airgap_enabled: bool = False
    airgap_filter: str = "vbmh-airgap"
    boot_mode: str = "legacy"
    bmc_base_port: int = BMC_BASE_PORT
    ipmi_server_port: int = 50891
    settle_timeout: float = 30.0
    daemon_timeout: float = 30.0
    daemon_poll_interval: float = 1.0
    require_k8s_tools: bool = False

    @property
    def indices(self) -> range:
        return range(1, self.vm_count + 1)

    def domain_name(self, index: int) -> str:
        return f"{self.vm_prefix}-{index}"

    def volume_name(self, index: int) -> str:
        return f"{VOLUME_PREFIX}-{index}"

    def mac_address(self, index: int) -> str:
        return f"{MAC_PREFIX}:{index:02d}"

    def bmc_port(self, index: int) -> int:
        return self.bmc_base_port + index

    @property
    def domain_names(self) -> List[str]:
        return [self.domain_name(i) for i in self.indices]

    @property
    def volume_names(self) -> List[str]:
        return [self.volume_name(i) for i in self.indices]


@dataclass
class Volume:
    name: str
    pool: str
    capacity_bytes: int
    path: Optional[str] = None


@dataclass
class Domain:
    name: str
    index: int
    mac: str
    volume: Volume
    uuid: Optional[str] = None


@dataclass
class BmcInstance:
    protocol: str
    domain: str
    port: int
    pid: Optional[int] = None
    config_path: Optional[Path] = None
    auth_file: Optional[Path] = None
    log_path: Optional[Path] = None


@dataclass
class LabState:
    protocol: str
    domains: List[Domain] = field(default_factory=list)
    bmc_instances: List[BmcInstance] = field(default_factory=list)

    @property
    def volumes(self) -> List[Volume]:
        return [domain.volume for domain in self.domains]
