"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from winvm.models import Capabilities, VMConfig, VncBind


@pytest.fixture
def default_vm_config(tmp_path) -> VMConfig:
    """Return a 'run' VMConfig with the built-in defaults and a disk under tmp_path."""
    return VMConfig(
        mode="run",
        disk_path=tmp_path / "win.qcow2",
        disk_size="80G",
        cpus=4,
        memory_mb=8192,
        vnc=VncBind("127.0.0.1", 1),
        vnc_password=False,
        monitor_port=9001,
        uefi_mode="auto",
        rdp_forward=False,
        name="winvm",
    )


@pytest.fixture
def install_media(tmp_path):
    """Create installer and driver ISOs and return their paths."""
    win_iso = tmp_path / "a.iso"
    virtio_iso = tmp_path / "b.iso"
    win_iso.write_bytes(b"windows")
    virtio_iso.write_bytes(b"virtio")
    return win_iso, virtio_iso


@pytest.fixture
def install_vm_config(default_vm_config, install_media) -> VMConfig:
    import dataclasses

    win_iso, virtio_iso = install_media
    return dataclasses.replace(
        default_vm_config,
        mode="install",
        disk_size="40G",
        win_iso=win_iso,
        virtio_iso=virtio_iso,
        daemonize=False,
    )


@pytest.fixture
def kvm_caps() -> Capabilities:
    return Capabilities(accel="kvm", cpu_model="host")


@pytest.fixture
def uefi_caps(tmp_path) -> Capabilities:
    return Capabilities(
        accel="kvm",
        cpu_model="host",
        uefi=True,
        firmware_code=Path("/usr/share/OVMF/OVMF_CODE.fd"),
        firmware_vars=tmp_path / "winvm_VARS.fd",
    )


@pytest.fixture
def firmware_files(tmp_path):
    """Create fake OVMF code/vars template files and an empty vars dir."""
    fw_dir = tmp_path / "ovmf"
    fw_dir.mkdir()
    code = fw_dir / "OVMF_CODE.fd"
    template = fw_dir / "OVMF_VARS.fd"
    code.write_bytes(b"code" * 16)
    template.write_bytes(b"vars-template")
    vars_dir = tmp_path / "data" / "qemu"
    return code, template, vars_dir


_PARSE_ENV_VARS = [
    "IMG_URL",
    "IMG_PATH",
    "RAM",
    "CPU",
    "VNC_DISPLAY",
    "VNC_ADDR",
    "WINVM_CONFIG",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() and load_defaults() read."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
