"""Global constants, defaults and exit codes for vbmh-lab."""

from __future__ import annotations

import os
import re
from pathlib import Path

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_VM_PREFIX = "vmok"
DEFAULT_VM_COUNT = "2"
DEFAULT_DISK_SIZE = "20G"
DEFAULT_MEMORY_MB = "4096"
DEFAULT_CPUS = "2"
DEFAULT_NETWORK_NAME = "provisioning"
DEFAULT_NETWORK_BRIDGE = "provisioning"
DEFAULT_NETWORK_SUBNET = "192.168.133.0/24"
DEFAULT_POOL_NAME = "vbmh"
DEFAULT_POOL_PATH = Path.home() / "vbmh-pool"
DEFAULT_LAB_DIR = Path.home() / "vbmh-lab"
DEFAULT_AIRGAP_FILTER = "vbmh-airgap"
DEFAULT_BMC_USERNAME = "admin"
DEFAULT_BMC_PASSWORD = "password"

# vbmcd's own RPC port, distinct from the per-domain IPMI ports.
DEFAULT_IPMI_SERVER_PORT = "50891"
BMC_BASE_PORT = 5000

SETTLE_TIMEOUT = "30"
DAEMON_TIMEOUT = "30"
DAEMON_POLL_INTERVAL = 1.0

VOLUME_PREFIX = "vol"
MAC_PREFIX = "52:54:00:01:00"
# Two decimal digits in the last MAC octet.
MAX_VM_COUNT = 99

PROTOCOL_IPMI = "ipmi"
PROTOCOL_REDFISH = "redfish"
PROTOCOL_REDFISH_VMEDIA = "redfish-virtualmedia"
SUPPORTED_BMC_PROTOCOLS = (PROTOCOL_IPMI, PROTOCOL_REDFISH, PROTOCOL_REDFISH_VMEDIA)
SUPPORTED_BOOT_MODES = {"legacy", "uefi"}

REDFISH_CERT_DAYS = 3650
VIRTUALBMC_CONFIG_ENV = "VIRTUALBMC_CONFIG"

LAB_METADATA_URI = "https://vbmh-lab.dev/xmlns/lab/1.0"
LAB_METADATA_KEY = "vbmh"

PROTOCOL_MARKER_NAME = "bmc-protocol"
LOCK_FILE_NAME = ".lock"
LOG_FILE_TEMPLATE = "create-vbmh-log-{stamp}.log"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
_SIZE_MULTIPLIERS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

_SENSITIVE_FIELDS = {"bmc_password"}

# Exit codes, one per failure class.
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_KVM_SUPPORT = 2
EXIT_NO_KVM_INSTALL = 3
EXIT_KVM_PERMISSIONS = 4
EXIT_NO_PIP_INSTALL = 5
EXIT_PYTHON_PREREQUISITES = 6
EXIT_NO_KUBECTL = 7
EXIT_NO_YQ = 8
EXIT_UNSUPPORTED_BMC_PROTOCOL = 9
EXIT_NO_HTPASSWD = 10
EXIT_UNSUPPORTED_OS = 11
EXIT_RESOURCE_DEFINITION = 12
EXIT_BMC_SUPERVISION = 13
EXIT_LAB_LOCKED = 14
