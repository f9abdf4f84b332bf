"""Persistent disk image provisioning and advisory locking for winvm."""

from __future__ import annotations

import fcntl
import os
import shutil
import stat
import subprocess
import tempfile
from pathlib import Path
from typing import IO, Optional

from winvm.constants import QEMU_IMG_BINARY
from winvm.exceptions import FilesystemError, LaunchError, ValidationError
from winvm.utils import ensure_directory, log, parse_size_to_bytes, run


def _refuse_non_regular(path: Path) -> None:
    try:
        mode = path.stat().st_mode
    except FileNotFoundError:
        return
    if stat.S_ISBLK(mode) or stat.S_ISCHR(mode):
        raise ValidationError(f"Refusing to use device node {path} as a disk image")
    if not stat.S_ISREG(mode):
        raise ValidationError(f"Disk path {path} exists but is not a regular file")


def require_disk(path: Path) -> None:
    """Fail unless ``path`` is an existing disk image file."""
    if not path.exists():
        raise ValidationError(f"Disk image not found at {path}. Did you run 'install' first?")
    _refuse_non_regular(path)


def check_free_space(path: Path, size: str) -> None:
    """Warn when the target filesystem has less room than the image may grow to."""
    requested = parse_size_to_bytes(size)
    try:
        free = shutil.disk_usage(path.parent).free
    except OSError:
        return
    if free < requested:
        log(
            "WARN",
            f"Only {free / (1024**3):.1f}G free at {path.parent}; the image may grow to {size}",
        )


def ensure_disk(path: Path, size: str, fmt: str = "qcow2") -> bool:
    """Create the disk image if it is absent. Returns True when a new image was created.

    An existing file is never read or modified. A failed creation leaves no
    file behind at ``path``.
    """
    if path.exists():
        _refuse_non_regular(path)
        log("INFO", f"Disk already exists at {path} (will reuse)")
        return False

    ensure_directory(path.parent)
    check_free_space(path, size)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".partial")
    os.close(fd)
    tmp_path = Path(tmp_name)
    log("INFO", f"Creating {fmt} disk at {path} (size {size}) ...")
    try:
        run(
            [QEMU_IMG_BINARY, "create", "-q", "-f", fmt, str(tmp_path), size],
            capture_output=True,
        )
        tmp_path.replace(path)
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
        raise FilesystemError(f"qemu-img could not create {path}: {detail}") from exc
    except FileNotFoundError as exc:
        raise FilesystemError(f"{QEMU_IMG_BINARY} not found; cannot create {path}") from exc
    except OSError as exc:
        raise FilesystemError(f"Could not create disk image {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)
    log("SUCCESS", f"Created disk {path}")
    return True


class DiskLock:
    """Exclusive advisory lock on ``<disk>.lock`` guarding one invocation per disk."""

    def __init__(self, disk_path: Path) -> None:
        self.path = disk_path.with_name(disk_path.name + ".lock")
        self._handle: Optional[IO[str]] = None

    def acquire(self) -> None:
        try:
            ensure_directory(self.path.parent)
            handle = open(self.path, "a+")
        except OSError as exc:
            raise FilesystemError(f"Cannot open disk lock {self.path}: {exc.strerror or exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise LaunchError(f"Disk is in use by another winvm invocation (lock held on {self.path})")
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        log("DEBUG", f"Acquired disk lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None
        log("DEBUG", f"Released disk lock {self.path}")

    def __enter__(self) -> "DiskLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
