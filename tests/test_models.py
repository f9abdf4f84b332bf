"""Tests for winvm.models module."""

import dataclasses
from pathlib import Path

import pytest

from winvm.models import ArgGroup, Capabilities, LaunchPlan, VMConfig, VncBind


class TestVncBind:
    def test_port_offset(self):
        assert VncBind("127.0.0.1", 1).port == 5901
        assert VncBind("127.0.0.1", 0).port == 5900

    def test_is_named_tuple(self):
        bind = VncBind("127.0.0.1", 2)
        assert bind[0] == "127.0.0.1"
        assert bind[1] == 2

    def test_locality(self):
        assert VncBind("127.0.0.1", 1).is_local
        assert VncBind("::1", 1).is_local
        assert not VncBind("", 1).is_local
        assert VncBind("", 1).bind_all
        assert VncBind("0.0.0.0", 1).bind_all
        assert not VncBind("192.168.1.5", 1).bind_all

    def test_str(self):
        assert str(VncBind("127.0.0.1", 1)) == "127.0.0.1:1"
        assert str(VncBind("", 4)) == ":4"
        assert str(VncBind("::1", 1)) == "[::1]:1"


class TestVMConfig:
    def test_defaults(self, default_vm_config):
        cfg = default_vm_config
        assert cfg.win_iso is None
        assert cfg.virtio_iso is None
        assert cfg.disk_format == "qcow2"
        assert cfg.disk_bus == "virtio"
        assert cfg.nic_model == "virtio-net-pci"
        assert cfg.daemonize is True
        assert cfg.no_reboot is False

    def test_frozen(self, default_vm_config):
        with pytest.raises(dataclasses.FrozenInstanceError):
            default_vm_config.cpus = 8  # type: ignore[misc]


class TestCapabilities:
    def test_defaults(self):
        caps = Capabilities(accel="tcg", cpu_model="qemu64")
        assert caps.uefi is False
        assert caps.firmware_code is None
        assert caps.firmware_vars is None
        assert caps.warnings == ()


class TestLaunchPlan:
    @pytest.fixture
    def plan(self):
        return LaunchPlan(
            binary="qemu-system-x86_64",
            groups=(
                ArgGroup("machine", ("-machine", "q35,accel=kvm", "-m", "4096")),
                ArgGroup("disk", ("-drive", f"file={Path('/vm/my disk.img')},if=ide")),
                ArgGroup("background", ("-daemonize",)),
            ),
        )

    def test_argv_flattens_groups_in_order(self, plan):
        assert plan.argv() == [
            "qemu-system-x86_64",
            "-machine",
            "q35,accel=kvm",
            "-m",
            "4096",
            "-drive",
            "file=/vm/my disk.img,if=ide",
            "-daemonize",
        ]

    def test_render_one_option_per_line(self, plan):
        lines = plan.render().split(" \\\n")
        assert lines == [
            "qemu-system-x86_64",
            "    -machine q35,accel=kvm",
            "    -m 4096",
            '    -drive "file=/vm/my disk.img,if=ide"',
            "    -daemonize",
        ]

    def test_empty_plan(self):
        plan = LaunchPlan(binary="qemu-system-x86_64")
        assert plan.argv() == ["qemu-system-x86_64"]
        assert plan.render() == "qemu-system-x86_64"
