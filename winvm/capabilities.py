"""Host virtualization and UEFI firmware detection for winvm."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from winvm.constants import (
    ACCEL_KVM,
    ACCEL_KVM_FALLBACK,
    ACCEL_TCG,
    CPU_MODEL_HOST,
    CPU_MODEL_TCG,
    KVM_DEVICE,
    OVMF_CODE,
    OVMF_VARS_TEMPLATE,
    UEFI_VARS_DIR,
)
from winvm.exceptions import CapabilityWarning, FilesystemError, ValidationError
from winvm.models import Capabilities, VMConfig
from winvm.utils import ensure_directory, log

KVM_OK = "kvm"
KVM_INACCESSIBLE = "kvm-maybe"
KVM_ABSENT = "tcg"


def kvm_state(device: Path = KVM_DEVICE) -> str:
    """Classify the KVM device as usable, present-but-inaccessible, or absent."""
    if not device.exists():
        return KVM_ABSENT
    if os.access(device, os.R_OK | os.W_OK):
        return KVM_OK
    return KVM_INACCESSIBLE


def detect_acceleration(device: Path = KVM_DEVICE) -> Tuple[str, str, List[CapabilityWarning]]:
    """Return (accel, cpu_model, warnings) for the host."""
    state = kvm_state(device)
    if state == KVM_OK:
        return ACCEL_KVM, CPU_MODEL_HOST, []
    if state == KVM_INACCESSIBLE:
        warning = CapabilityWarning(
            f"{device} present but not accessible; trying kvm first, will fall back to tcg. "
            "Run 'winvm setup --fix-kvm' to join the kvm group."
        )
        return ACCEL_KVM_FALLBACK, CPU_MODEL_HOST, [warning]
    warning = CapabilityWarning(
        f"{device} not found. Falling back to software emulation (tcg); expect a much slower guest."
    )
    return ACCEL_TCG, CPU_MODEL_TCG, [warning]


def _provision_vars(template: Path, destination: Path) -> None:
    """Copy the vars template into place through a temp file so no partial store is left."""
    ensure_directory(destination.parent)
    fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        shutil.copyfile(template, tmp_path)
        tmp_path.chmod(0o644)
        tmp_path.replace(destination)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise FilesystemError(f"Could not create UEFI variable store {destination}: {exc}") from exc


def detect_firmware(
    uefi_mode: str,
    vm_name: str,
    code: Path = OVMF_CODE,
    vars_template: Path = OVMF_VARS_TEMPLATE,
    vars_dir: Path = UEFI_VARS_DIR,
    provision: bool = True,
) -> Tuple[Optional[Path], Optional[Path], List[CapabilityWarning]]:
    """Resolve the OVMF code and per-VM vars store for the requested UEFI mode.

    ``off`` never consults the filesystem. ``on`` fails when the firmware is
    missing. ``auto`` uses firmware only when the code file is installed.
    An existing vars store is reused as-is so the guest keeps its boot entries.
    """
    if uefi_mode == "off":
        return None, None, []

    if not code.is_file():
        if uefi_mode == "on":
            raise ValidationError(f"Requested --uefi but OVMF not found at {code}. Install package 'ovmf'.")
        log("DEBUG", f"OVMF not found at {code}; booting with legacy BIOS")
        return None, None, []

    vars_path = vars_dir / f"{vm_name}_VARS.fd"
    if vars_path.exists():
        log("DEBUG", f"Reusing UEFI variable store {vars_path}")
        return code, vars_path, []

    if not vars_template.is_file():
        message = f"OVMF variable template not found at {vars_template}"
        if uefi_mode == "on":
            raise ValidationError(f"Requested --uefi but {message}. Install package 'ovmf'.")
        return None, None, [CapabilityWarning(f"{message}; booting with legacy BIOS instead of UEFI")]

    if provision:
        _provision_vars(vars_template, vars_path)
        log("INFO", f"Created UEFI variable store {vars_path}")
    return code, vars_path, []


def detect_capabilities(
    cfg: VMConfig,
    device: Path = KVM_DEVICE,
    code: Path = OVMF_CODE,
    vars_template: Path = OVMF_VARS_TEMPLATE,
    vars_dir: Path = UEFI_VARS_DIR,
    provision: bool = True,
) -> Capabilities:
    """Combine acceleration and firmware detection; warnings are returned for the caller to report."""
    accel, cpu_model, warnings = detect_acceleration(device)
    firmware_code, firmware_vars, fw_warnings = detect_firmware(
        cfg.uefi_mode, cfg.name, code=code, vars_template=vars_template, vars_dir=vars_dir, provision=provision
    )
    warnings.extend(fw_warnings)
    return Capabilities(
        accel=accel,
        cpu_model=cpu_model,
        uefi=firmware_code is not None,
        firmware_code=firmware_code,
        firmware_vars=firmware_vars,
        warnings=tuple(warnings),
    )
