"""Data models for winvm."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple

from winvm.constants import LOCALHOST, VNC_BASE_PORT
from winvm.exceptions import CapabilityWarning


class VncBind(NamedTuple):
    host: str  # "" binds all interfaces
    display: int

    @property
    def port(self) -> int:
        return VNC_BASE_PORT + self.display

    @property
    def bind_all(self) -> bool:
        return self.host in ("", "0.0.0.0", "::")

    @property
    def is_local(self) -> bool:
        return self.host in (LOCALHOST, "localhost", "::1")

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.display}"


@dataclass(frozen=True)
class VMConfig:
    mode: str
    disk_path: Path
    disk_size: str
    cpus: int
    memory_mb: int
    vnc: VncBind
    vnc_password: bool
    monitor_port: int
    uefi_mode: str
    rdp_forward: bool
    name: str
    win_iso: Optional[Path] = None
    virtio_iso: Optional[Path] = None
    disk_format: str = "qcow2"
    disk_bus: str = "virtio"
    disk_cache: str = "none"
    nic_model: str = "virtio-net-pci"
    daemonize: bool = True
    no_reboot: bool = False


@dataclass(frozen=True)
class Capabilities:
    accel: str
    cpu_model: str
    uefi: bool = False
    firmware_code: Optional[Path] = None
    firmware_vars: Optional[Path] = None
    warnings: Tuple[CapabilityWarning, ...] = ()


class ArgGroup(NamedTuple):
    name: str
    args: Tuple[str, ...]


@dataclass(frozen=True)
class LaunchPlan:
    binary: str
    groups: Tuple[ArgGroup, ...] = field(default_factory=tuple)

    def argv(self) -> List[str]:
        args = [self.binary]
        for grp in self.groups:
            args.extend(grp.args)
        return args

    def render(self) -> str:
        """Format the command for display, one option and its value per line."""
        lines = [self.binary]
        for grp in self.groups:
            args = list(grp.args)
            while args:
                head = args.pop(0)
                if args and not args[0].startswith("-"):
                    head = f"{head} {subprocess.list2cmdline([args.pop(0)])}"
                lines.append(f"    {head}")
        return " \\\n".join(lines)
