"""BMC emulator supervision (VirtualBMC and sushy-emulator) for vbmh-lab.

Both backends hold the ``subprocess.Popen`` handles of the processes they
launch for the duration of the run. PID files in the lab directory exist
so the *next* run can find and terminate whatever an interrupted run left
behind.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from ipaddress import ip_address
from pathlib import Path
from typing import Dict, List, Optional, Set, Type

from vbmh.constants import (
    PROTOCOL_IPMI,
    PROTOCOL_REDFISH,
    PROTOCOL_REDFISH_VMEDIA,
    REDFISH_CERT_DAYS,
    SUPPORTED_BMC_PROTOCOLS,
    VIRTUALBMC_CONFIG_ENV,
)
from vbmh.exceptions import BmcStartError, NotFound, UnsupportedBmcProtocol
from vbmh.models import BmcInstance, LabConfig
from vbmh.utils import (
    ensure_directory,
    find_processes,
    hash_password,
    log,
    process_matches,
    read_pid,
    run,
    terminate_pid,
    wait_for,
)
from vbmh.virt import VirtEntityClient


class BmcSupervisor:
    """Common process bookkeeping for the emulator backends."""

    protocol = ""
    dir_name = ""

    def __init__(self, config: LabConfig, client: VirtEntityClient) -> None:
        self.cfg = config
        self.client = client
        self.work_dir = config.lab_dir / self.dir_name
        self.processes: List[subprocess.Popen] = []

    def teardown(self) -> Set[int]:
        raise NotImplementedError

    def activate(self) -> List[BmcInstance]:
        raise NotImplementedError

    def _reset_work_dir(self) -> None:
        if self.work_dir.exists():
            shutil.rmtree(self.work_dir)
        ensure_directory(self.work_dir)

    @staticmethod
    def _kill_from_pid_file(pid_file: Path, label: str) -> int:
        """Stop the process recorded in ``pid_file`` if it is still ``label``.

        Returns the PID that was stopped, 0 when nothing was signalled.
        """
        pid = read_pid(pid_file)
        if pid and not process_matches(pid, label):
            log("DEBUG", f"PID {pid} from {pid_file} is not a running {label}; discarding the file")
            pid_file.unlink(missing_ok=True)
            return 0
        if pid and terminate_pid(pid):
            log("INFO", f"Stopped stale {label} (PID {pid})")
        elif pid:
            log("DEBUG", f"Stale PID file {pid_file} pointed at dead process {pid}")
        pid_file.unlink(missing_ok=True)
        return pid

    def _assert_running(self, proc: subprocess.Popen, name: str, log_path: Path) -> None:
        time.sleep(0.5)
        if proc.poll() is not None:
            tail = ""
            if log_path.exists():
                tail = "\n".join(log_path.read_text(errors="replace").splitlines()[-10:])
            log("ERROR", f"{name} failed to start")
            if tail:
                log("ERROR", f"{name} output:\n{tail}")
            raise BmcStartError(f"{name} exited prematurely (code {proc.returncode})")

    def stop(self) -> None:
        for proc in self.processes:
            if proc.poll() is None:
                proc.terminate()
        for proc in self.processes:
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
        self.processes = []


class IpmiBackend(BmcSupervisor):
    """One vbmcd daemon with a registration per domain."""

    protocol = PROTOCOL_IPMI
    dir_name = "vbmc"

    def __init__(self, config: LabConfig, client: VirtEntityClient) -> None:
        super().__init__(config, client)
        self.config_file = self.work_dir / "virtualbmc.conf"
        self.conf_dir = self.work_dir / "conf"
        # Owned by vbmcd itself: it refuses to start while the PID in it is alive.
        self.pid_file = self.work_dir / "vbmcd.pid"
        self.run_pid_file = self.work_dir / "vbmcd.run.pid"
        self.log_file = self.work_dir / "vbmcd.log"
        self._daemon: Optional[subprocess.Popen] = None

    def teardown(self) -> Set[int]:
        stopped = set()
        for pid_file in (self.run_pid_file, self.pid_file):
            pid = self._kill_from_pid_file(pid_file, "vbmcd")
            if pid:
                stopped.add(pid)
        return stopped

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env[VIRTUALBMC_CONFIG_ENV] = str(self.config_file)
        return env

    def _write_config(self) -> Path:
        ensure_directory(self.conf_dir)
        lines = [
            "[default]",
            f"config_dir = {self.conf_dir}",
            f"pid_file = {self.pid_file}",
            f"server_port = {self.cfg.ipmi_server_port}",
            "",
            "[log]",
            f"logfile = {self.log_file}",
        ]
        self.config_file.write_text("\n".join(lines) + "\n")
        return self.config_file

    def _daemon_ready(self) -> bool:
        if self._daemon is not None and self._daemon.poll() is not None:
            raise BmcStartError(f"vbmcd exited prematurely (code {self._daemon.returncode}); see {self.log_file}")
        result = run(["vbmc", "list"], check=False, capture_output=True, env=self._env())
        return result.returncode == 0

    def _start_daemon(self) -> None:
        log("INFO", "Starting vbmcd")
        try:
            with open(self.log_file, "a") as out:
                proc = subprocess.Popen(
                    ["vbmcd", "--foreground"],
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    env=self._env(),
                    start_new_session=True,
                )
        except FileNotFoundError as exc:
            raise BmcStartError(f"Failed to start vbmcd: {exc}") from exc
        self._daemon = proc
        self.processes.append(proc)
        self.run_pid_file.write_text(f"{proc.pid}\n")

        if not wait_for(
            self._daemon_ready,
            timeout=self.cfg.daemon_timeout,
            interval=self.cfg.daemon_poll_interval,
        ):
            raise BmcStartError(f"vbmcd did not answer within {self.cfg.daemon_timeout:g}s; see {self.log_file}")
        log("SUCCESS", f"vbmcd running (PID {proc.pid})")

    def _register(self, index: int) -> BmcInstance:
        name = self.cfg.domain_name(index)
        port = self.cfg.bmc_port(index)
        add_cmd = [
            "vbmc",
            "add",
            name,
            "--port",
            str(port),
            "--username",
            self.cfg.bmc_username,
            "--password",
            self.cfg.bmc_password,
            "--address",
            self.cfg.bmc_host,
            "--libvirt-uri",
            self.cfg.libvirt_uri,
        ]
        try:
            run(add_cmd, capture_output=True, env=self._env())
            run(["vbmc", "start", name], capture_output=True, env=self._env())
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            raise BmcStartError(f"Failed to register IPMI endpoint for {name}: {detail}") from exc
        log("INFO", f"IPMI endpoint for {name} on {self.cfg.bmc_host}:{port}")
        return BmcInstance(
            protocol=self.protocol,
            domain=name,
            port=port,
            config_path=self.config_file,
            log_path=self.log_file,
        )

    def activate(self) -> List[BmcInstance]:
        self.teardown()
        self._reset_work_dir()
        self._write_config()
        self._start_daemon()
        instances = [self._register(index) for index in self.cfg.indices]
        log("SUCCESS", f"{len(instances)} IPMI endpoint(s) registered")
        return instances


class RedfishBackend(BmcSupervisor):
    """One sushy-emulator process per domain, each restricted to its domain UUID."""

    protocol = PROTOCOL_REDFISH
    dir_name = "redfish"

    def __init__(self, config: LabConfig, client: VirtEntityClient) -> None:
        super().__init__(config, client)
        self.protocol = config.bmc_protocol if config.bmc_protocol in REDFISH_PROTOCOLS else PROTOCOL_REDFISH
        self.cert = self.work_dir / "sushy.crt"
        self.key = self.work_dir / "sushy.key"

    def _path(self, kind: str, index: int) -> Path:
        suffix = {"config": "conf", "auth": "htpasswd", "pid": "pid", "log": "log"}[kind]
        return self.work_dir / f"sushy-{index}.{suffix}"

    def teardown(self) -> Set[int]:
        if not self.work_dir.exists():
            return set()
        tracked = set()
        for pid_file in sorted(self.work_dir.glob("sushy-*.pid")):
            pid = self._kill_from_pid_file(pid_file, "sushy-emulator")
            if pid:
                tracked.add(pid)
        return tracked

    def _warn_orphans(self, tracked: Set[int]) -> None:
        ours = tracked | {proc.pid for proc in self.processes} | {os.getpid()}
        orphans = [pid for pid in find_processes("sushy-emulator") if pid not in ours]
        if orphans:
            log(
                "WARN",
                "sushy-emulator processes not tracked by this lab are running "
                f"(PIDs {', '.join(str(pid) for pid in orphans)}); they may hold BMC ports",
            )

    def _issue_certificate(self) -> None:
        host = self.cfg.bmc_host
        try:
            ip_address(host)
            san = f"IP:{host}"
        except ValueError:
            san = f"DNS:{host}"
        log("INFO", f"Generating self-signed certificate for {host}")
        cmd = [
            "openssl",
            "req",
            "-x509",
            "-nodes",
            "-days",
            str(REDFISH_CERT_DAYS),
            "-newkey",
            "rsa:2048",
            "-keyout",
            str(self.key),
            "-out",
            str(self.cert),
            "-subj",
            f"/CN={host}",
            "-addext",
            f"subjectAltName={san}",
        ]
        try:
            run(cmd, capture_output=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            detail = getattr(exc, "stderr", None) or str(exc)
            raise BmcStartError(f"Failed to generate Redfish certificate: {detail}") from exc
        self.key.chmod(0o600)

    def _write_auth_file(self, index: int) -> Path:
        auth_path = self._path("auth", index)
        hashed = hash_password(self.cfg.bmc_password)
        auth_path.write_text(f"{self.cfg.bmc_username}:{hashed}\n")
        auth_path.chmod(0o600)
        return auth_path

    def _write_config(self, index: int, uuid: str, auth_file: Path) -> Path:
        config_path = self._path("config", index)
        lines = [
            f"SUSHY_EMULATOR_LIBVIRT_URI = {self.cfg.libvirt_uri!r}",
            f"SUSHY_EMULATOR_LISTEN_IP = {self.cfg.bmc_host!r}",
            f"SUSHY_EMULATOR_LISTEN_PORT = {self.cfg.bmc_port(index)}",
            f"SUSHY_EMULATOR_SSL_CERT = {str(self.cert)!r}",
            f"SUSHY_EMULATOR_SSL_KEY = {str(self.key)!r}",
            f"SUSHY_EMULATOR_AUTH_FILE = {str(auth_file)!r}",
            f"SUSHY_EMULATOR_ALLOWED_INSTANCES = [{uuid!r}]",
        ]
        if self.protocol == PROTOCOL_REDFISH_VMEDIA:
            lines.append("SUSHY_EMULATOR_VMEDIA_VERIFY_SSL = False")
        config_path.write_text("\n".join(lines) + "\n")
        return config_path

    def _start_instance(self, index: int) -> BmcInstance:
        name = self.cfg.domain_name(index)
        port = self.cfg.bmc_port(index)
        try:
            uuid = self.client.uuid("domain", name)
        except NotFound as exc:
            raise BmcStartError(f"Cannot start Redfish endpoint: {exc}") from exc

        auth_file = self._write_auth_file(index)
        config_file = self._write_config(index, uuid, auth_file)
        log_path = self._path("log", index)
        cmd = ["sushy-emulator", "--config", str(config_file)]
        log("INFO", f"Starting sushy-emulator for {name} (port {port})")
        try:
            with open(log_path, "a") as out:
                proc = subprocess.Popen(
                    cmd,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as exc:
            raise BmcStartError(f"Failed to start sushy-emulator: {exc}") from exc
        self.processes.append(proc)
        self._path("pid", index).write_text(f"{proc.pid}\n")
        self._assert_running(proc, f"sushy-emulator ({name})", log_path)
        return BmcInstance(
            protocol=self.protocol,
            domain=name,
            port=port,
            pid=proc.pid,
            config_path=config_file,
            auth_file=auth_file,
            log_path=log_path,
        )

    def activate(self) -> List[BmcInstance]:
        tracked = self.teardown()
        self._warn_orphans(tracked)
        self._reset_work_dir()
        self._issue_certificate()
        instances = [self._start_instance(index) for index in self.cfg.indices]
        log("SUCCESS", f"{len(instances)} Redfish endpoint(s) on https://{self.cfg.bmc_host}")
        return instances


REDFISH_PROTOCOLS = (PROTOCOL_REDFISH, PROTOCOL_REDFISH_VMEDIA)

BACKENDS: Dict[str, Type[BmcSupervisor]] = {
    PROTOCOL_IPMI: IpmiBackend,
    PROTOCOL_REDFISH: RedfishBackend,
    PROTOCOL_REDFISH_VMEDIA: RedfishBackend,
}


def supervisor_for(config: LabConfig, client: VirtEntityClient) -> BmcSupervisor:
    backend = BACKENDS.get(config.bmc_protocol)
    if backend is None:
        raise UnsupportedBmcProtocol(
            f"Unsupported BMC protocol '{config.bmc_protocol}'. "
            f"Supported: {', '.join(SUPPORTED_BMC_PROTOCOLS)}"
        )
    return backend(config, client)


def teardown_all(config: LabConfig, client: VirtEntityClient) -> None:
    """Stop the emulators of every protocol that may have run in this lab."""
    for backend in (IpmiBackend, RedfishBackend):
        backend(config, client).teardown()
