"""CLI entry points for winvm."""

from __future__ import annotations

import dataclasses
from typing import List, Optional

from winvm.capabilities import detect_capabilities
from winvm.config import args_to_overrides, load_defaults, parse_args, parse_env, resolve_config
from winvm.constants import LOCALHOST, MODE_INSTALL, MODE_RUN, QEMU_BINARY, QEMU_IMG_BINARY, RDP_PORT
from winvm.disk import DiskLock, ensure_disk, require_disk
from winvm.exceptions import ManagerError
from winvm.host import require_binaries, run_setup
from winvm.launcher import launch_background, launch_foreground, preflight_ports
from winvm.models import Capabilities, VMConfig
from winvm.plan import build_launch_plan
from winvm.utils import download_file, log


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")


def print_startup_banner(cfg: VMConfig, caps: Capabilities) -> None:
    """Print a visually distinct access-info banner before the VM starts."""
    vnc_host = cfg.vnc.host or "0.0.0.0"
    if cfg.vnc.bind_all:
        vnc_scope = "  (ALL INTERFACES)"
    elif not cfg.vnc.is_local:
        vnc_scope = "  (NOT LOCAL ONLY)"
    else:
        vnc_scope = ""
    lines: List[str] = [
        f"  VM: {cfg.name} ({cfg.mode})",
        f"  Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Accel: {caps.accel} | UEFI: {'yes' if caps.uefi else 'no'}",
        f"  Disk: {cfg.disk_path}",
        f"  VNC:  vnc://{vnc_host}:{cfg.vnc.port}{vnc_scope}",
        f"  Monitor (telnet): {LOCALHOST}:{cfg.monitor_port}",
    ]
    if cfg.vnc_password:
        lines.append(f"  To set VNC password: telnet {LOCALHOST} {cfg.monitor_port} -> 'change vnc password'")
    if cfg.rdp_forward:
        lines.append(f"  RDP:  {LOCALHOST}:{RDP_PORT}")
    if cfg.vnc.is_local:
        lines.append("")
        lines.append(f"  Remote access: ssh -L {cfg.vnc.port}:{LOCALHOST}:{cfg.vnc.port} user@host")

    max_len = max(len(line) for line in lines)
    border_len = max_len + 2
    banner_colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{banner_colour}{line}{reset}", flush=True)
    print(f"{banner_colour}{'=' * border_len}{reset}", flush=True)


def report_warnings(caps: Capabilities) -> None:
    for warning in caps.warnings:
        log("WARN", str(warning))


def start_vm(cfg: VMConfig, dry_run: bool = False) -> int:
    """Detect capabilities, provision the disk, build the plan and hand off to QEMU."""
    binaries = (QEMU_BINARY, QEMU_IMG_BINARY) if cfg.mode == MODE_INSTALL else (QEMU_BINARY,)
    require_binaries(binaries)
    if cfg.mode == MODE_RUN:
        require_disk(cfg.disk_path)

    if dry_run:
        caps = detect_capabilities(cfg, provision=False)
        report_warnings(caps)
        if cfg.mode == MODE_INSTALL and not cfg.disk_path.exists():
            log("INFO", f"Would create {cfg.disk_format} disk at {cfg.disk_path} (size {cfg.disk_size})")
        plan = build_launch_plan(cfg, caps)
        log("INFO", "=== Configuration ===")
        show_config(cfg)
        log("INFO", "=== QEMU command ===")
        print(plan.render(), flush=True)
        log("INFO", "=== Dry-run complete (no VM started) ===")
        return 0

    caps = detect_capabilities(cfg)
    report_warnings(caps)

    with DiskLock(cfg.disk_path):
        if cfg.mode == MODE_INSTALL:
            ensure_disk(cfg.disk_path, cfg.disk_size, cfg.disk_format)
        else:
            require_disk(cfg.disk_path)

        plan = build_launch_plan(cfg, caps)
        preflight_ports(cfg)
        print_startup_banner(cfg, caps)
        log("DEBUG", f"QEMU command:\n{plan.render()}")

        if cfg.daemonize:
            log("INFO", "Booting Windows VM from disk in the background...")
            launch_background(plan)
            log("SUCCESS", f"VM '{cfg.name}' started; QEMU is running detached")
            return 0

        if cfg.mode == MODE_INSTALL:
            log("INFO", "Starting Windows installer...")
        else:
            log("INFO", "Starting QEMU in the foreground...")
        retcode = launch_foreground(plan)
        if retcode != 0:
            log("WARN", f"QEMU exited with status {retcode}")
        return retcode


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
        if args.command == "setup":
            run_setup(install_deps=args.install_deps, fix_kvm=args.fix_kvm)
            return 0
        cfg = resolve_config(args.command, args_to_overrides(args), load_defaults())
        return start_vm(cfg, dry_run=args.dry_run)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1


def env_main() -> int:
    """Entry point configured only through IMG_URL, IMG_PATH, RAM, CPU, VNC_DISPLAY and VNC_ADDR."""
    log("INFO", "=== QEMU Windows Runner ===")
    try:
        cfg, image_url = parse_env()
        require_binaries((QEMU_BINARY,))
        if cfg.disk_path.exists():
            log("INFO", f"Found existing image at {cfg.disk_path}")
        else:
            download_file(image_url, cfg.disk_path, label="Downloading Windows image")
        size_gb = cfg.disk_path.stat().st_size / (1024**3)
        log("INFO", f"Image size: {size_gb:.1f}G")
        return start_vm(cfg)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
