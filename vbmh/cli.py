"""CLI entry points for vbmh-lab."""

from __future__ import annotations

import argparse
import dataclasses
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

from vbmh.config import parse_env
from vbmh.constants import _SENSITIVE_FIELDS, EXIT_ERROR, EXIT_OK, SUPPORTED_BMC_PROTOCOLS
from vbmh.exceptions import ManagerError
from vbmh.models import LabConfig, LabState
from vbmh.prereqs import run_preflight
from vbmh.reconciler import LabReconciler
from vbmh.utils import close_log_file, log, open_log_file, set_verbose
from vbmh.virt import VirtEntityClient


def show_config(cfg: LabConfig) -> None:
    """Print the resolved lab configuration."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS:
            print(f"  {field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                print(f"    {sub_field.name}: {getattr(value, sub_field.name)}")
        else:
            print(f"  {field.name}: {value}")


def print_summary(cfg: LabConfig, state: LabState) -> None:
    """Print a visually distinct summary of the reconciled lab."""
    lines: List[str] = []
    lines.append(f"  Lab: {cfg.lab_dir} | Network: {cfg.network.name} ({cfg.network.subnet})")
    lines.append(f"  BMC: {state.protocol} on {cfg.bmc_host} | User: {cfg.bmc_username}")
    ports = {instance.domain: instance.port for instance in state.bmc_instances}
    for domain in state.domains:
        lines.append(f"  {domain.name:<12} mac={domain.mac}  disk={domain.volume.name}  bmc-port={ports.get(domain.name, '-')}")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


class LabArgumentParser(argparse.ArgumentParser):
    """Report usage errors with EXIT_ERROR rather than argparse's 2 (taken by EXIT_NO_KVM_SUPPORT)."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_ERROR, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = LabArgumentParser(description="Provision a lab of virtual bare-metal hosts with simulated BMCs")
    parser.add_argument("--config", type=Path, help="YAML file with lab options")
    parser.add_argument("--teardown", action="store_true", help="Remove the fleet and its BMC endpoints, then exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved lab configuration and exit")
    parser.add_argument("--skip-preflight", action="store_true", help="Do not check host prerequisites")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for the run log (default: cwd)")

    lab = parser.add_argument_group("lab options")
    lab.add_argument("-n", "--vm-count", dest="vm_count", type=int)
    lab.add_argument("--vm-prefix", dest="vm_prefix")
    lab.add_argument("--disk-size", dest="disk_size")
    lab.add_argument("--memory", dest="memory_mb", type=int, help="Memory per VM in MiB")
    lab.add_argument("--cpus", dest="cpus", type=int)
    lab.add_argument("--network-name", dest="network_name")
    lab.add_argument("--network-bridge", dest="network_bridge")
    lab.add_argument("--network-subnet", dest="network_subnet")
    lab.add_argument("--pool-name", dest="pool_name")
    lab.add_argument("--pool-path", dest="pool_path")
    lab.add_argument("--tpm", dest="tpm", action=argparse.BooleanOptionalAction, default=None)
    lab.add_argument("--airgap", dest="airgap", action=argparse.BooleanOptionalAction, default=None)
    lab.add_argument("--boot-mode", dest="boot_mode", choices=["legacy", "uefi"])
    # Not restricted with choices: unknown values must reach the dedicated exit code.
    lab.add_argument("--bmc-protocol", dest="bmc_protocol", help=f"One of: {', '.join(SUPPORTED_BMC_PROTOCOLS)}")
    lab.add_argument("--bmc-username", dest="bmc_username")
    lab.add_argument("--bmc-password", dest="bmc_password")
    lab.add_argument("--bmc-host", dest="bmc_host")
    lab.add_argument("--lab-dir", dest="lab_dir")
    lab.add_argument("--libvirt-uri", dest="libvirt_uri")
    return parser


_NON_LAB_ARGS = {"config", "teardown", "show_config", "skip_preflight", "verbose", "log_dir"}


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    return {key: value for key, value in vars(args).items() if key not in _NON_LAB_ARGS and value is not None}


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = build_parser().parse_args(argv)
    except SystemExit as exc:
        # --help exits 0; usage errors carry EXIT_ERROR.
        return exc.code if isinstance(exc.code, int) else EXIT_ERROR
    if args.verbose:
        set_verbose(True)

    try:
        if not args.show_config:
            log_path = open_log_file(args.log_dir)
            log("INFO", f"Logging to {log_path}")
        cfg = parse_env(config_path=args.config, overrides=overrides_from_args(args))
        if args.show_config:
            show_config(cfg)
            return EXIT_OK

        if not args.skip_preflight and not args.teardown:
            run_preflight(cfg)
        with VirtEntityClient(cfg.libvirt_uri) as client:
            reconciler = LabReconciler(cfg, client)
            if args.teardown:
                reconciler.teardown()
                return EXIT_OK
            log("INFO", f"Reconciling lab: {cfg.vm_count} x {cfg.vm_prefix} ({cfg.bmc_protocol})")
            state = reconciler.reconcile()
        print_summary(cfg, state)
        log("SUCCESS", "Lab ready")
        return EXIT_OK
    except ManagerError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", traceback.format_exc().rstrip())
        return EXIT_ERROR
    finally:
        close_log_file()
