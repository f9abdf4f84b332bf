"""Utility functions for winvm."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from winvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    SIZE_UNITS,
)
from winvm.exceptions import DependencyMissingError, FilesystemError, ValidationError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level prefixes."""
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


def parse_int(label: str, raw, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{label} must be an integer (got '{raw}')")
    if value < min_val:
        raise ValidationError(f"{label} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ValidationError(f"{label} must be <= {max_val} (got {value})")
    return value


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name) or default
    return parse_int(name, raw, min_val=min_val, max_val=max_val)


def validate_disk_size(raw: str, label: str = "--size") -> str:
    if not DISK_SIZE_RE.match(raw or ""):
        raise ValidationError(
            f"Invalid {label} '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '80G')"
        )
    return raw.upper()


def parse_size_to_bytes(size: str) -> int:
    """Convert a qemu-img style size ('80G', '512M', '1024') to bytes."""
    validate_disk_size(size)
    unit = size[-1].upper() if size[-1].isalpha() else ""
    number = size[:-1] if unit else size
    return int(number) * SIZE_UNITS[unit]


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def which(binary: str) -> str:
    """Return the absolute path of ``binary`` or raise DependencyMissingError."""
    found = shutil.which(binary)
    if not found:
        raise DependencyMissingError(
            f"Missing dependency: {binary} (install qemu-system-x86 and qemu-utils, or run 'winvm setup --install-deps')"
        )
    return found


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line.

    The payload is streamed into a temporary file beside ``destination`` and
    renamed into place only once complete, so the destination is either fully
    populated or absent.
    """
    log("INFO", f"{label}: {url}")
    ensure_directory(destination.parent)
    req = Request(url, headers={"User-Agent": "winvm/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise FilesystemError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise FilesystemError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with (
        response,
        tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=f".{destination.name}.") as tmp,
    ):
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    total_mb = total_bytes / (1024 * 1024)
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp.flush()
            os.fsync(tmp.fileno())
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise FilesystemError(f"Download of {url} failed: {exc}") from exc
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        tmp_path.replace(destination)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise FilesystemError(f"Could not move download into place at {destination}: {exc}") from exc
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
