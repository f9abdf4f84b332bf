"""Emulator process handoff for winvm."""

from __future__ import annotations

import errno
import signal
import socket
import subprocess
from typing import List, Optional, Tuple

from winvm.constants import LOCALHOST, RDP_PORT
from winvm.exceptions import DependencyMissingError, LaunchError
from winvm.models import LaunchPlan, VMConfig
from winvm.utils import log

DETACH_TIMEOUT = 60.0


def _required_endpoints(cfg: VMConfig) -> List[Tuple[str, str, int]]:
    endpoints = [
        ("VNC", cfg.vnc.host, cfg.vnc.port),
        ("monitor", LOCALHOST, cfg.monitor_port),
    ]
    if cfg.rdp_forward:
        endpoints.append(("RDP forward", LOCALHOST, RDP_PORT))
    return endpoints


def check_port_free(host: str, port: int) -> None:
    """Bind and release ``host:port``; raise LaunchError if it cannot be bound."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    bind_host = host or "0.0.0.0"
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((bind_host, port))
        except OSError as exc:
            if exc.errno == errno.EADDRINUSE:
                raise LaunchError(f"{bind_host}:{port} is already in use") from exc
            raise LaunchError(f"Cannot bind {bind_host}:{port}: {exc.strerror or exc}") from exc


def preflight_ports(cfg: VMConfig) -> None:
    for label, host, port in _required_endpoints(cfg):
        try:
            check_port_free(host, port)
        except LaunchError as exc:
            raise LaunchError(f"{label} endpoint unavailable: {exc}") from exc
        log("DEBUG", f"{label} port {port} is free")


class LaunchHandle:
    """Handle on a started emulator process.

    Callers either ``wait()`` on it (foreground) or ``detach()`` from it once
    the emulator has daemonized itself (background).
    """

    def __init__(self, proc: subprocess.Popen, plan: LaunchPlan) -> None:
        self.proc = proc
        self.plan = plan

    @property
    def pid(self) -> int:
        return self.proc.pid

    def wait(self) -> int:
        """Block until the emulator exits and return its exit status."""

        def _terminate(signum, frame):
            self.proc.terminate()

        prev_sigterm = signal.signal(signal.SIGTERM, _terminate)
        try:
            return self.proc.wait()
        except KeyboardInterrupt:
            self.proc.send_signal(signal.SIGINT)
            return self.proc.wait()
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)

    def detach(self, timeout: float = DETACH_TIMEOUT) -> None:
        """Wait for the self-daemonizing parent to exit after initialization."""
        try:
            _, stderr = self.proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.communicate()
            raise LaunchError(f"QEMU did not finish initializing within {timeout:.0f}s")
        if self.proc.returncode != 0:
            detail = (stderr or "").strip() or f"exit status {self.proc.returncode}"
            raise LaunchError(f"QEMU failed to start: {detail}")


def launch(plan: LaunchPlan, background: bool = False) -> LaunchHandle:
    """Start the emulator with the complete argument plan."""
    argv = plan.argv()
    log("DEBUG", f"Running: {' '.join(argv)}")
    kwargs = {}
    if background:
        kwargs = {"stdin": subprocess.DEVNULL, "stdout": subprocess.DEVNULL, "stderr": subprocess.PIPE, "text": True}
    try:
        proc = subprocess.Popen(argv, **kwargs)
    except FileNotFoundError as exc:
        raise DependencyMissingError(f"QEMU executable '{plan.binary}' not found") from exc
    except OSError as exc:
        raise LaunchError(f"Could not execute {plan.binary}: {exc}") from exc
    return LaunchHandle(proc, plan)


def launch_foreground(plan: LaunchPlan) -> int:
    handle = launch(plan)
    log("INFO", f"QEMU running in the foreground (pid {handle.pid}); close the VM or press Ctrl-C to stop")
    return handle.wait()


def launch_background(plan: LaunchPlan, timeout: Optional[float] = None) -> None:
    handle = launch(plan, background=True)
    handle.detach(timeout if timeout is not None else DETACH_TIMEOUT)
