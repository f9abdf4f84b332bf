"""QEMU argument assembly for winvm."""

from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

from winvm.constants import LOCALHOST, MACHINE_TYPE, MODE_INSTALL, QEMU_BINARY, RDP_PORT
from winvm.exceptions import ValidationError
from winvm.models import ArgGroup, Capabilities, LaunchPlan, VMConfig


def _escape(value) -> str:
    """Escape a value embedded in a QEMU -drive/-nic option string."""
    return str(value).replace(",", ",,")


def _machine(cfg: VMConfig, caps: Capabilities) -> List[str]:
    return [
        "-machine", f"{MACHINE_TYPE},accel={caps.accel}",
        "-cpu", caps.cpu_model,
        "-smp", str(cfg.cpus),
        "-m", str(cfg.memory_mb),
        "-name", cfg.name,
        "-rtc", "base=localtime",
    ]


def _input() -> List[str]:
    # absolute pointer so the VNC cursor tracks the guest
    return ["-device", "qemu-xhci,id=xhci", "-device", "usb-tablet,bus=xhci.0"]


def _firmware(caps: Capabilities) -> List[str]:
    if not caps.uefi:
        return []
    if caps.firmware_code is None or caps.firmware_vars is None:
        raise ValidationError("UEFI is active but firmware paths are missing")
    return [
        "-drive", f"if=pflash,format=raw,readonly=on,file={_escape(caps.firmware_code)}",
        "-drive", f"if=pflash,format=raw,file={_escape(caps.firmware_vars)}",
    ]


def _disk(cfg: VMConfig) -> List[str]:
    drive = f"file={_escape(cfg.disk_path)},if={cfg.disk_bus},format={cfg.disk_format}"
    return ["-drive", f"{drive},discard=unmap,cache={cfg.disk_cache}"]


def _media(cfg: VMConfig) -> List[str]:
    if cfg.mode != MODE_INSTALL:
        return []
    args: List[str] = []
    for iso in (cfg.win_iso, cfg.virtio_iso):
        if iso is None:
            raise ValidationError("install requires both --win-iso and --virtio-iso")
        args.extend(["-drive", f"file={_escape(Path(iso))},media=cdrom,if=ide,readonly=on"])
    return args


def _network(cfg: VMConfig) -> List[str]:
    nic = f"user,model={cfg.nic_model}"
    if cfg.rdp_forward:
        nic += f",hostfwd=tcp:{LOCALHOST}:{RDP_PORT}-:{RDP_PORT}"
    return ["-nic", nic]


def _display(cfg: VMConfig) -> List[str]:
    vnc = str(cfg.vnc)
    if cfg.vnc_password:
        vnc += ",password=on"
    return ["-vnc", vnc, "-display", "none"]


def _monitor(cfg: VMConfig) -> List[str]:
    return ["-monitor", f"telnet:{LOCALHOST}:{cfg.monitor_port},server=on,wait=off"]


def _boot(cfg: VMConfig) -> List[str]:
    return ["-boot", "order=d" if cfg.mode == MODE_INSTALL else "order=c"]


def _background(cfg: VMConfig) -> List[str]:
    args: List[str] = []
    if cfg.no_reboot:
        args.append("-no-reboot")
    if cfg.daemonize and cfg.mode != MODE_INSTALL:
        args.append("-daemonize")
    return args


def build_launch_plan(cfg: VMConfig, caps: Capabilities, binary: str = QEMU_BINARY) -> LaunchPlan:
    """Map a config and detected capabilities to an ordered QEMU argument plan.

    The result depends only on the inputs; identical inputs always produce an
    identical argument list.
    """
    sections: Tuple[Tuple[str, List[str]], ...] = (
        ("machine", _machine(cfg, caps)),
        ("input", _input()),
        ("firmware", _firmware(caps)),
        ("disk", _disk(cfg)),
        ("media", _media(cfg)),
        ("network", _network(cfg)),
        ("display", _display(cfg)),
        ("monitor", _monitor(cfg)),
        ("boot", _boot(cfg)),
        ("background", _background(cfg)),
    )
    groups = tuple(ArgGroup(name, tuple(args)) for name, args in sections if args)
    return LaunchPlan(binary=binary, groups=groups)
