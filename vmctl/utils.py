"""Utility functions for vmctl."""

from __future__ import annotations

import contextlib
import fcntl
import os
import platform
import secrets
import shutil
import string
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Iterator, List, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmctl.constants import (
    _LOG_VERBOSE,
    ARCH_ALIASES,
    DISK_SIZE_RE,
    MEMORY_RE,
    NAME_ADJECTIVES,
    NAME_NOUNS,
    PASSWORD_LENGTH,
    TRUTHY,
)
from vmctl.exceptions import DependencyMissingError, ExternalToolError, ManagerError, VMBusyError
from vmctl.models import CommandResult

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _verbose:
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


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
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
            f"Invalid disk size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def validate_memory(raw: str) -> str:
    if not MEMORY_RE.match(raw):
        raise ManagerError(f"Invalid memory size '{raw}'. Use a number with optional suffix: M, G (e.g. '4G')")
    return raw


def normalize_arch(raw: str) -> str:
    lowered = raw.strip().lower()
    return ARCH_ALIASES.get(lowered, lowered)


def host_arch() -> str:
    return normalize_arch(platform.machine())


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vmctl/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)

                if total_bytes:
                    total_mb = total_bytes / (1024 * 1024)
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
            tmp.flush()
            tmp_path.replace(destination)
            final_mb = downloaded / (1024 * 1024)
            log("SUCCESS", f"Downloaded {final_mb:.1f} MiB in {time.time() - start_time:.1f}s")
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise


def wait_for_path(path: Path, timeout: float = 10.0, interval: float = 0.1) -> bool:
    """Poll for a filesystem path to show up (e.g., a pidfile)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if path.exists():
            return True
        time.sleep(interval)
    return path.exists()


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def random_vm_name() -> str:
    """Return a name like ``swift-node-417``."""
    adjective = secrets.choice(NAME_ADJECTIVES)
    noun = secrets.choice(NAME_NOUNS)
    return f"{adjective}-{noun}-{100 + secrets.randbelow(900)}"


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


class SubprocessRunner:
    """Runs external commands and captures their output.

    Output goes through temporary files instead of pipes: a daemonizing
    child (``qemu -daemonize``) inherits the descriptors and would keep a
    pipe open forever.
    """

    def run(self, cmd: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        argv: List[str] = [str(part) for part in cmd]
        log("DEBUG", f"Running: {' '.join(argv)}")
        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.run(argv, stdin=subprocess.DEVNULL, stdout=out, stderr=err, timeout=timeout)
            except FileNotFoundError:
                raise DependencyMissingError(f"Required tool not found: {argv[0]}")
            out.seek(0)
            err.seek(0)
            stdout = out.read().decode("utf-8", errors="replace")
            stderr = err.read().decode("utf-8", errors="replace")
        return CommandResult(proc.returncode, stdout, stderr)

    def which(self, binary: str) -> Optional[str]:
        return shutil.which(binary)


@contextlib.contextmanager
def vm_lock(lock_path: Path, timeout: float, interval: float = 0.1) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``lock_path`` for the block."""
    ensure_directory(lock_path.parent)
    with open(lock_path, "a", encoding="utf-8") as handle:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise VMBusyError(f"Another vmctl process is operating on this VM (lock: {lock_path})")
                time.sleep(interval)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def run_checked(runner: SubprocessRunner, cmd: Sequence[str], message: str) -> CommandResult:
    """Run ``cmd`` and raise ``ExternalToolError`` on a non-zero exit."""
    result = runner.run(cmd)
    if result.returncode != 0:
        raise ExternalToolError(
            message,
            argv=[str(part) for part in cmd],
            returncode=result.returncode,
            output=(result.stderr or result.stdout).strip(),
        )
    return result
