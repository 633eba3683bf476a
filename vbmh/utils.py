"""Utility functions for vbmh-lab."""

from __future__ import annotations

import os
import re
import signal
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, TextIO

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vbmh import constants
from vbmh.constants import (
    _SIZE_MULTIPLIERS,
    DISK_SIZE_RE,
    LOG_FILE_TEMPLATE,
    TRUTHY,
)
from vbmh.exceptions import CredentialHashError, ManagerError

_log_file: Optional[TextIO] = None


def log(level: str, message: str) -> None:
    """Lightweight structured logging, teed into the run log file when one is open."""
    if level == "DEBUG" and not constants._LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)
    if _log_file is not None:
        stamp = datetime.now().isoformat(timespec="seconds")
        _log_file.write(f"{stamp} [{level}] {message}\n")
        _log_file.flush()


def open_log_file(directory: Optional[Path] = None) -> Path:
    """Start appending every log line to a timestamped file for this run."""
    global _log_file
    close_log_file()
    directory = directory or Path.cwd()
    path = directory / LOG_FILE_TEMPLATE.format(stamp=int(time.time()))
    _log_file = open(path, "a")
    return path


def close_log_file() -> None:
    global _log_file
    if _log_file is not None:
        _log_file.close()
        _log_file = None


def set_verbose(enabled: bool) -> None:
    constants._LOG_VERBOSE = enabled


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_bool(name: str, raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_size_to_bytes(raw: str) -> int:
    validate_disk_size(raw)
    suffix = raw[-1].upper() if raw[-1].isalpha() else ""
    number = raw[:-1] if suffix else raw
    return int(number) * _SIZE_MULTIPLIERS[suffix]


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def wait_for(
    predicate: Callable[[], bool],
    timeout: float = 10.0,
    interval: float = 0.1,
) -> bool:
    """Poll ``predicate`` until it returns True or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while True:
        if predicate():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def name_pattern(prefix: str) -> "re.Pattern[str]":
    """Anchored pattern for ``<prefix>-<integer>`` resource names."""
    return re.compile(rf"^{re.escape(prefix)}-[0-9]+$")


def trailing_index(name: str) -> int:
    match = re.search(r"-([0-9]+)$", name)
    return int(match.group(1)) if match else 0


def hash_password(password: str) -> str:
    """Return a bcrypt hash usable in an htpasswd file."""
    try:
        hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    except ValueError as exc:
        raise CredentialHashError(f"Unable to hash BMC password: {exc}") from exc
    return hashed.decode("utf-8")


def read_pid(path: Path) -> int:
    """Return the PID stored in ``path``, 0 when missing or unreadable."""
    try:
        raw = path.read_text().strip()
    except FileNotFoundError:
        return 0
    try:
        return int(raw)
    except ValueError:
        log("WARN", f"Ignoring malformed PID file {path}: '{raw[:20]}'")
        return 0


def pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def process_matches(pid: int, needle: str) -> bool:
    """True if ``pid`` is alive and its command line contains ``needle``."""
    if pid <= 0:
        return False
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return False
    return needle in raw.replace(b"\0", b" ").decode("utf-8", errors="replace")


def terminate_pid(pid: int, timeout: float = 5.0) -> bool:
    """SIGTERM ``pid``, escalating to SIGKILL. Returns False if it was already gone."""
    if not pid_alive(pid):
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    if not wait_for(lambda: not pid_alive(pid), timeout=timeout, interval=0.1):
        log("WARN", f"PID {pid} ignored SIGTERM; sending SIGKILL")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    return True


def find_processes(pattern: str) -> List[int]:
    """Return PIDs whose command line matches ``pattern`` (via pgrep)."""
    try:
        result = subprocess.run(
            ["pgrep", "-f", pattern],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        log("DEBUG", "pgrep not available; skipping process scan")
        return []
    if result.returncode != 0:
        return []
    pids: List[int] = []
    for line in result.stdout.strip().splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging. Values following ``--password`` are masked."""
    shown = ["********" if prev == "--password" else arg for prev, arg in zip([""] + cmd, cmd)]
    log("DEBUG", f"Running: {' '.join(shown)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
