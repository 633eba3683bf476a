"""vbmh-lab: libvirt virtual bare-metal hosts with simulated BMCs."""

__all__ = [
    "bmc",
    "cli",
    "config",
    "constants",
    "domains",
    "exceptions",
    "models",
    "network",
    "prereqs",
    "reconciler",
    "storage",
    "utils",
    "virt",
]
