"""Top-level pipeline bringing a lab to its declared state."""

from __future__ import annotations

import fcntl
from contextlib import contextmanager
from typing import Iterator, Optional

from vbmh import bmc
from vbmh.constants import LOCK_FILE_NAME, PROTOCOL_MARKER_NAME, VOLUME_PREFIX
from vbmh.domains import DomainManager
from vbmh.exceptions import LabLocked, ManagerError
from vbmh.models import LabConfig, LabState
from vbmh.network import NetworkProvisioner
from vbmh.storage import StorageProvisioner, VolumeManager
from vbmh.utils import ensure_directory, log
from vbmh.virt import VirtEntityClient


class LabReconciler:
    """Sequence cleanup, creation and BMC activation for one lab directory.

    Steps run strictly in order and every fatal error aborts the run. Libvirt
    objects created earlier in the same run stay in place (except a partial
    fleet, which :class:`~vbmh.domains.DomainManager` rolls back itself) and
    emulator processes launched by a failed activation are stopped: the
    cleanup phase of the next run is what reconciles leftovers away.
    """

    def __init__(self, config: LabConfig, client: VirtEntityClient) -> None:
        self.cfg = config
        self.client = client
        self.networks = NetworkProvisioner(client)
        self.storage = StorageProvisioner(client)
        self.volumes = VolumeManager(client)
        self.domains = DomainManager(config, client, self.volumes)
        self.supervisor: Optional[bmc.BmcSupervisor] = None

    @property
    def marker_path(self):
        return self.cfg.lab_dir / PROTOCOL_MARKER_NAME

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold an exclusive lock on the lab directory."""
        ensure_directory(self.cfg.lab_dir)
        lock_path = self.cfg.lab_dir / LOCK_FILE_NAME
        with open(lock_path, "w") as handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise LabLocked(f"Lab directory {self.cfg.lab_dir} is in use by another run") from exc
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def cleanup(self) -> None:
        """Remove everything a previous run of this lab left behind."""
        log("INFO", "=== Cleaning up previous lab state ===")
        bmc.teardown_all(self.cfg, self.client)
        self.domains.destroy_running()
        self.domains.undefine_all()
        self.volumes.delete_matching(self.cfg.pool_name, VOLUME_PREFIX)

    def reconcile(self) -> LabState:
        with self.locked():
            # Resolve before mutating anything so an unknown protocol leaves the host untouched.
            self.supervisor = bmc.supervisor_for(self.cfg, self.client)
            self.cleanup()

            log("INFO", "=== Creating lab infrastructure ===")
            self.networks.ensure_network(self.cfg.network)
            if self.cfg.airgap_enabled:
                self.networks.ensure_airgap_filter(self.cfg.airgap_filter, self.cfg.network)
            self.storage.ensure_pool(self.cfg.pool_name, self.cfg.pool_path)
            fleet = self.domains.create_fleet()

            log("INFO", f"=== Activating {self.cfg.bmc_protocol} BMC endpoints ===")
            try:
                instances = self.supervisor.activate()
            except (ManagerError, OSError):
                # Emulators launched by this run would otherwise keep their ports.
                self.supervisor.stop()
                raise
            self.marker_path.write_text(f"{self.supervisor.protocol}\n")

        return LabState(protocol=self.cfg.bmc_protocol, domains=fleet, bmc_instances=instances)

    def teardown(self) -> None:
        """Remove the fleet and its BMC endpoints. Network and pool persist."""
        with self.locked():
            self.cleanup()
            self.marker_path.unlink(missing_ok=True)
        log("SUCCESS", f"Lab {self.cfg.lab_dir} torn down")
