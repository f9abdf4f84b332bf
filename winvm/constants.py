"""Global constants and path configuration for winvm."""

from __future__ import annotations

import os
import re
from pathlib import Path

MODE_INSTALL = "install"
MODE_RUN = "run"
MODES = (MODE_INSTALL, MODE_RUN)

UEFI_MODES = ("auto", "on", "off")

QEMU_BINARY = "qemu-system-x86_64"
QEMU_IMG_BINARY = "qemu-img"
MACHINE_TYPE = "q35"

# Acceleration modes handed to "-machine accel=..."
ACCEL_KVM = "kvm"
ACCEL_KVM_FALLBACK = "kvm:tcg"
ACCEL_TCG = "tcg"

CPU_MODEL_HOST = "host"
CPU_MODEL_TCG = "qemu64"

KVM_DEVICE = Path("/dev/kvm")

OVMF_CODE = Path("/usr/share/OVMF/OVMF_CODE.fd")
OVMF_VARS_TEMPLATE = Path("/usr/share/OVMF/OVMF_VARS.fd")

# Per-user data directory holding the writable UEFI variable stores.
_XDG_DATA_HOME = os.environ.get("XDG_DATA_HOME")
if _XDG_DATA_HOME:
    USER_DATA_DIR = Path(_XDG_DATA_HOME)
else:
    USER_DATA_DIR = Path.home() / ".local" / "share"
UEFI_VARS_DIR = USER_DATA_DIR / "qemu"

LOCALHOST = "127.0.0.1"
VNC_BASE_PORT = 5900
MAX_VNC_DISPLAY = 65535 - VNC_BASE_PORT
RDP_PORT = 3389

DEFAULTS = {
    "disk": str(Path.home() / "win.qcow2"),
    "size": "80G",
    "cpus": 4,
    "mem": 8192,
    "vnc": f"{LOCALHOST}:1",
    "vnc_password": False,
    "monitor": 9001,
    "uefi": "auto",
    "rdp": False,
    "name": "winvm",
    "win_iso": None,
    "virtio_iso": None,
    "disk_format": "qcow2",
    "disk_bus": "virtio",
    "disk_cache": "none",
    "nic_model": "virtio-net-pci",
    "daemonize": True,
    "no_reboot": False,
}

# Optional YAML file overriding DEFAULTS before flags are applied.
CONFIG_FILE_ENV = "WINVM_CONFIG"

# Defaults for the environment-variable entry point (winvm-env).
ENV_DEFAULTS = {
    "IMG_URL": (
        "https://www.dropbox.com/scl/fi/2uoa2y5eiumfo1g3xlxlm/Win10Lite.img"
        "?rlkey=10f38hfgtkquiugyjbaxwfwum&st=4y6g1xuh&dl=1"
    ),
    "IMG_PATH": "Win10Lite.img",  # relative to the working directory
    "RAM": "4G",
    "CPU": "2",
    "VNC_DISPLAY": "1",
    "VNC_ADDR": LOCALHOST,
}

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}

DISK_FORMATS = {"qcow2", "raw"}
DISK_BUSES = {"virtio", "ide"}
DISK_CACHE_MODES = {"none", "writeback", "writethrough", "directsync", "unsafe"}

APT_PACKAGES = ("qemu-system-x86", "qemu-utils", "ovmf")
