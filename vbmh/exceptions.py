"""Custom exceptions for vbmh-lab.

Every class carries the process exit code the CLI returns when it escapes
a run.
"""

from __future__ import annotations

from typing import Optional

from vbmh.constants import (
    EXIT_BMC_SUPERVISION,
    EXIT_ERROR,
    EXIT_KVM_PERMISSIONS,
    EXIT_LAB_LOCKED,
    EXIT_NO_HTPASSWD,
    EXIT_RESOURCE_DEFINITION,
    EXIT_UNSUPPORTED_BMC_PROTOCOL,
)


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    exit_code = EXIT_ERROR

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class BackendUnavailable(ManagerError):
    """The libvirt daemon cannot be reached."""

    exit_code = EXIT_KVM_PERMISSIONS


class VirtError(ManagerError):
    """libvirt rejected an operation."""

    exit_code = EXIT_RESOURCE_DEFINITION


class NotFound(VirtError):
    """The named libvirt object does not exist."""


class NetworkDefinitionError(VirtError):
    pass


class PoolDefinitionError(VirtError):
    pass


class VolumeCreateError(VirtError):
    pass


class DomainCreateError(VirtError):
    pass


class BmcStartError(ManagerError):
    """A BMC emulator daemon or process could not be brought up."""

    exit_code = EXIT_BMC_SUPERVISION


class UnsupportedBmcProtocol(ManagerError):
    exit_code = EXIT_UNSUPPORTED_BMC_PROTOCOL


class CredentialHashError(ManagerError):
    exit_code = EXIT_NO_HTPASSWD


class LabLocked(ManagerError):
    """Another run holds the lab directory."""

    exit_code = EXIT_LAB_LOCKED
