"""Host dependency checks and the opt-in privileged setup step."""

from __future__ import annotations

import getpass
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List

from winvm.capabilities import KVM_ABSENT, KVM_INACCESSIBLE, kvm_state
from winvm.constants import APT_PACKAGES, KVM_DEVICE, QEMU_BINARY, QEMU_IMG_BINARY
from winvm.exceptions import DependencyMissingError, ManagerError
from winvm.utils import log, run, which


def require_binaries(names: Iterable[str] = (QEMU_BINARY, QEMU_IMG_BINARY)) -> List[str]:
    """Resolve every binary to a path, failing on the first one missing."""
    return [which(name) for name in names]


def install_dependencies() -> None:
    """Install QEMU, qemu-img and OVMF with apt-get. Requires root."""
    if os.geteuid() != 0:
        raise ManagerError(
            f"Installing dependencies requires root. Run with sudo or install manually: {' '.join(APT_PACKAGES)}"
        )
    if shutil.which("apt-get") is None:
        raise DependencyMissingError(
            f"apt-get not available; install manually: {QEMU_BINARY}, {QEMU_IMG_BINARY}, OVMF"
        )
    log("INFO", f"Installing {' '.join(APT_PACKAGES)} with apt-get")
    try:
        run(["apt-get", "update", "-y"])
        run(["apt-get", "install", "-y", *APT_PACKAGES])
    except subprocess.CalledProcessError as exc:
        raise DependencyMissingError(f"apt-get failed with exit status {exc.returncode}") from exc
    log("SUCCESS", "Dependencies installed")


def fix_kvm_access(device: Path = KVM_DEVICE) -> bool:
    """Add the current user to the kvm group when the device is present but inaccessible.

    Returns True when group membership was changed. The change only applies to
    new login sessions.
    """
    state = kvm_state(device)
    if state == KVM_ABSENT:
        log("WARN", f"{device} not found; enable virtualization in firmware or load the kvm module")
        return False
    if state != KVM_INACCESSIBLE:
        log("INFO", f"{device} is already accessible")
        return False
    if shutil.which("sudo") is None:
        raise DependencyMissingError("sudo not available; add yourself to the 'kvm' group manually")
    user = getpass.getuser()
    try:
        run(["sudo", "usermod", "-aG", "kvm", user])
    except subprocess.CalledProcessError as exc:
        raise ManagerError(f"Could not add {user} to the kvm group (exit status {exc.returncode})") from exc
    log("SUCCESS", f"Added {user} to the kvm group; log out and back in for it to take effect")
    return True


def run_setup(install_deps: bool = False, fix_kvm: bool = False) -> None:
    if not install_deps and not fix_kvm:
        log("INFO", "Nothing to do; pass --install-deps and/or --fix-kvm")
        return
    if install_deps:
        install_dependencies()
    if fix_kvm:
        fix_kvm_access()
