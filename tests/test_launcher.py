"""Tests for winvm.launcher module."""

from __future__ import annotations

import dataclasses
import signal
import socket
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from winvm.exceptions import DependencyMissingError, LaunchError
from winvm.launcher import (
    LaunchHandle,
    check_port_free,
    launch,
    launch_background,
    launch_foreground,
    preflight_ports,
)
from winvm.models import ArgGroup, LaunchPlan, VncBind


@pytest.fixture
def plan() -> LaunchPlan:
    return LaunchPlan(binary="qemu-system-x86_64", groups=(ArgGroup("machine", ("-m", "1024")),))


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestPortPreflight:
    def test_free_port_passes(self):
        check_port_free("127.0.0.1", _free_port())

    def test_busy_port_raises(self, busy_port):
        with pytest.raises(LaunchError, match="already in use"):
            check_port_free("127.0.0.1", busy_port)

    def test_preflight_names_monitor_endpoint(self, default_vm_config):
        with patch("winvm.launcher.check_port_free", side_effect=[None, LaunchError("in use")]):
            with pytest.raises(LaunchError, match="monitor endpoint unavailable"):
                preflight_ports(default_vm_config)

    def test_preflight_checks_every_endpoint(self, default_vm_config):
        cfg = dataclasses.replace(default_vm_config, rdp_forward=True, vnc=VncBind("", 3))
        with patch("winvm.launcher.check_port_free") as mock_check:
            preflight_ports(cfg)
        assert [c.args for c in mock_check.call_args_list] == [
            ("", 5903),
            ("127.0.0.1", 9001),
            ("127.0.0.1", 3389),
        ]


class TestLaunch:
    def test_missing_binary_raises_dependency_error(self, plan):
        with patch("winvm.launcher.subprocess.Popen", side_effect=FileNotFoundError()):
            with pytest.raises(DependencyMissingError, match="not found"):
                launch(plan)

    def test_passes_complete_argv(self, plan):
        with patch("winvm.launcher.subprocess.Popen") as mock_popen:
            handle = launch(plan)
        mock_popen.assert_called_once_with(["qemu-system-x86_64", "-m", "1024"])
        assert handle.plan is plan

    def test_background_captures_stderr(self, plan):
        with patch("winvm.launcher.subprocess.Popen") as mock_popen:
            launch(plan, background=True)
        kwargs = mock_popen.call_args.kwargs
        assert kwargs["stderr"] == subprocess.PIPE
        assert kwargs["stdin"] == subprocess.DEVNULL


class TestLaunchHandle:
    def test_wait_returns_exit_status(self, plan):
        proc = MagicMock()
        proc.wait.return_value = 3
        assert LaunchHandle(proc, plan).wait() == 3

    def test_wait_forwards_ctrl_c(self, plan):
        proc = MagicMock()
        proc.wait.side_effect = [KeyboardInterrupt(), 130]
        assert LaunchHandle(proc, plan).wait() == 130
        proc.send_signal.assert_called_once_with(signal.SIGINT)

    def test_detach_success(self, plan):
        proc = MagicMock()
        proc.communicate.return_value = ("", "")
        proc.returncode = 0
        LaunchHandle(proc, plan).detach()

    def test_detach_failure_raises_with_stderr(self, plan):
        proc = MagicMock()
        proc.communicate.return_value = ("", "Failed to find an available port: Address already in use\n")
        proc.returncode = 1
        with pytest.raises(LaunchError, match="Address already in use"):
            LaunchHandle(proc, plan).detach()

    def test_detach_failure_reports_lock_error(self, plan):
        proc = MagicMock()
        proc.communicate.return_value = ("", 'Failed to get "write" lock\n')
        proc.returncode = 1
        with pytest.raises(LaunchError, match='Failed to get "write" lock'):
            LaunchHandle(proc, plan).detach()

    def test_detach_timeout_kills(self, plan):
        proc = MagicMock()
        proc.communicate.side_effect = [subprocess.TimeoutExpired("qemu", 1), ("", "")]
        with pytest.raises(LaunchError, match="did not finish initializing"):
            LaunchHandle(proc, plan).detach(timeout=1)
        proc.kill.assert_called_once()


class TestLaunchHelpers:
    def test_launch_foreground_propagates_status(self, plan, capsys):
        with patch("winvm.launcher.launch") as mock_launch:
            mock_launch.return_value.wait.return_value = 0
            mock_launch.return_value.pid = 4242
            assert launch_foreground(plan) == 0
        mock_launch.assert_called_once_with(plan)
        assert "pid 4242" in capsys.readouterr().out

    def test_launch_background_detaches(self, plan):
        with patch("winvm.launcher.launch") as mock_launch:
            launch_background(plan, timeout=5)
        mock_launch.assert_called_once_with(plan, background=True)
        mock_launch.return_value.detach.assert_called_once_with(5)
