"""Utility functions for consoleboot."""

from __future__ import annotations

import hashlib
import os
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from consoleboot.constants import _LOG_VERBOSE, DISK_SIZE_RE
from consoleboot.exceptions import ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
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
            f"Invalid QEMU_STORAGE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '1G')"
        )
    return raw


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _format_progress(done: int, total: Optional[int], elapsed: float) -> str:
    mib = 1024 * 1024
    rate = done / elapsed / mib if elapsed > 0 else 0.0
    if not total:
        return f"  {done / mib:.1f} MiB ({rate:.1f} MiB/s)"
    width = 30
    filled = width * done // total
    return (
        f"  [{'#' * filled}{'-' * (width - filled)}] {done * 100 / total:5.1f}% "
        f"{done / mib:.1f}/{total / mib:.1f} MiB ({rate:.1f} MiB/s)"
    )


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Fetch *url* into *destination*; a partial download never replaces it."""
    log("INFO", f"{label}: {url}")
    request = Request(url, headers={"User-Agent": "consoleboot/1.0"})
    try:
        response = urlopen(request, timeout=60)
    except HTTPError as exc:
        raise ManagerError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ManagerError(f"Failed to download {url}: {exc.reason}")

    length = response.headers.get("Content-Length")
    total = int(length) if length else None
    done = 0
    started = time.monotonic()
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as out:
            for chunk in iter(lambda: response.read(256 * 1024), b""):
                out.write(chunk)
                done += len(chunk)
                print("\r" + _format_progress(done, total, time.monotonic() - started), end="", flush=True)
        print(flush=True)
        tmp_path.replace(destination)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    log("SUCCESS", f"Downloaded {done / (1024 * 1024):.1f} MiB in {time.monotonic() - started:.1f}s")


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


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash suitable for /etc/shadow on musl-based guests."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
