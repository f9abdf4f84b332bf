"""Flag parsing, defaults loading and configuration resolution for winvm."""

from __future__ import annotations

import argparse
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from winvm.constants import (
    CONFIG_FILE_ENV,
    DEFAULTS,
    DISK_BUSES,
    DISK_CACHE_MODES,
    DISK_FORMATS,
    ENV_DEFAULTS,
    MAX_VNC_DISPLAY,
    MODE_INSTALL,
    MODE_RUN,
    MODES,
    RDP_PORT,
    UEFI_MODES,
    VM_NAME_RE,
)
from winvm.exceptions import ValidationError
from winvm.models import VMConfig, VncBind
from winvm.utils import get_env, log, parse_int, parse_int_env, validate_disk_size

_RAM_RE = re.compile(r"^(\d+)([MG]?)$", re.IGNORECASE)

_BOOL_FIELDS = ("vnc_password", "rdp", "daemonize", "no_reboot")


class ValidatingArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ValidationError instead of exiting with status 2."""

    def error(self, message: str):  # type: ignore[override]
        raise ValidationError(f"{message} (use --help)")


def _add_launch_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--disk", metavar="PATH", help=f"Path to VM disk (qcow2). Default: {DEFAULTS['disk']}")
    parser.add_argument(
        "--size", help=f"Disk size for 'install' if disk does not exist (e.g., 80G). Default: {DEFAULTS['size']}"
    )
    parser.add_argument("--cpus", metavar="N", help=f"vCPU count. Default: {DEFAULTS['cpus']}")
    parser.add_argument("--mem", metavar="MB", help=f"Memory (MiB). Default: {DEFAULTS['mem']}")
    parser.add_argument(
        "--vnc",
        metavar="HOST:DISPLAY",
        help=f"VNC bind host and display. Default: {DEFAULTS['vnc']} (port 5901, LOCAL ONLY)",
    )
    parser.add_argument(
        "--vnc-password",
        action="store_true",
        default=None,
        help="Require VNC password (set interactively via the QEMU monitor)",
    )
    parser.add_argument(
        "--monitor", metavar="PORT", help=f"Monitor telnet port on localhost. Default: {DEFAULTS['monitor']}"
    )
    uefi = parser.add_mutually_exclusive_group()
    uefi.add_argument("--uefi", dest="uefi", action="store_const", const="on", help="Require UEFI via OVMF")
    uefi.add_argument("--no-uefi", dest="uefi", action="store_const", const="off", help="Disable UEFI")
    parser.add_argument(
        "--rdp",
        action="store_true",
        default=None,
        help=f"Forward localhost TCP {RDP_PORT} to guest {RDP_PORT} (after enabling RDP in Windows)",
    )
    parser.add_argument("--name", help=f"QEMU VM name. Default: {DEFAULTS['name']}")
    parser.add_argument("--dry-run", action="store_true", help="Validate and print the QEMU command, then exit")


def build_parser() -> ValidatingArgumentParser:
    parser = ValidatingArgumentParser(
        prog="winvm",
        description="Create and run a Windows VM on QEMU/KVM with VNC access.",
        epilog=(
            "VNC listens on 127.0.0.1 by default. Tunnel it with: ssh -L 5901:127.0.0.1:5901 user@host\n"
            "With --vnc-password, set the password via the monitor: "
            "telnet 127.0.0.1 9001 -> 'change vnc password'"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="{install,run,setup}")
    sub.required = True

    install = sub.add_parser(MODE_INSTALL, help="Create the disk if needed and boot the Windows installer")
    _add_launch_flags(install)
    install.add_argument("--win-iso", metavar="PATH", help="Windows installer ISO (required)")
    install.add_argument("--virtio-iso", metavar="PATH", help="virtio-win driver ISO (required)")

    run = sub.add_parser(MODE_RUN, help="Boot an installed VM from disk in the background")
    _add_launch_flags(run)
    run.add_argument("--win-iso", metavar="PATH", help=argparse.SUPPRESS)
    run.add_argument("--virtio-iso", metavar="PATH", help=argparse.SUPPRESS)

    setup = sub.add_parser("setup", help="Opt-in privileged host preparation")
    setup.add_argument(
        "--install-deps", action="store_true", help="Install QEMU and OVMF with apt-get (requires root)"
    )
    setup.add_argument("--fix-kvm", action="store_true", help="Add the current user to the kvm group via sudo")
    return parser


def parse_args(tokens: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(tokens)


def args_to_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate parsed flags into override keys understood by resolve_config()."""
    keys = (
        "disk",
        "size",
        "cpus",
        "mem",
        "vnc",
        "vnc_password",
        "monitor",
        "uefi",
        "rdp",
        "name",
        "win_iso",
        "virtio_iso",
    )
    return {key: getattr(args, key, None) for key in keys}


def parse_vnc_bind(value: str, source: str = "--vnc") -> VncBind:
    """Parse ``HOST:DISPLAY`` or ``:DISPLAY`` into a VncBind.

    ``source`` names where the value came from in warnings and errors.
    """
    raw = (value or "").strip()
    if ":" not in raw:
        raise ValidationError(f"Invalid {source} '{value}': expected HOST:DISPLAY (e.g. 127.0.0.1:1)")
    host, _, display_raw = raw.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    display = parse_int(f"{source} display", display_raw, min_val=0, max_val=MAX_VNC_DISPLAY)
    bind = VncBind(host=host, display=display)
    if not host:
        log(
            "WARN",
            f"{source} '{raw}' has no host: VNC will listen on ALL interfaces (port {bind.port}). "
            f"Use 127.0.0.1:{display} to keep it local.",
        )
    elif bind.bind_all:
        log("WARN", f"{source} makes VNC listen on ALL interfaces ({host}:{bind.port}), reachable beyond localhost")
    elif not bind.is_local:
        log("WARN", f"{source} makes VNC listen on {host}:{bind.port}, reachable beyond localhost")
    return bind


def load_defaults(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load default overrides from the YAML file named by WINVM_CONFIG, if any."""
    if path is None:
        env_path = get_env(CONFIG_FILE_ENV)
        if not env_path:
            return {}
        path = Path(env_path).expanduser()
    if not path.exists():
        raise ValidationError(f"Config file missing: {path}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ValidationError(f"Config file {path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    defaults: Dict[str, Any] = {}
    for key, value in data.items():
        norm = str(key).strip().lstrip("-").replace("-", "_")
        if norm not in DEFAULTS:
            supported = ", ".join(sorted(DEFAULTS))
            raise ValidationError(f"Unknown key '{key}' in {path}. Supported: {supported}")
        defaults[norm] = value
    log("DEBUG", f"Loaded defaults from {path}: {sorted(defaults)}")
    return defaults


def _uefi_mode(raw: Any) -> str:
    if isinstance(raw, bool):
        return "on" if raw else "off"
    mode = str(raw).strip().lower()
    if mode not in UEFI_MODES:
        raise ValidationError(f"Invalid UEFI mode '{raw}'. Supported: {', '.join(UEFI_MODES)}")
    return mode


def _media_path(raw: Optional[str], flag: str, label: str) -> Path:
    if not raw:
        raise ValidationError(f"{flag} is required for 'install'")
    path = Path(raw).expanduser()
    if not path.is_file():
        raise ValidationError(f"{label} not found: {path}")
    return path


def resolve_config(
    mode: str,
    overrides: Optional[Mapping[str, Any]] = None,
    defaults: Optional[Mapping[str, Any]] = None,
) -> VMConfig:
    """Merge built-in defaults, file defaults and overrides into a validated VMConfig."""
    if mode not in MODES:
        raise ValidationError(f"Unknown subcommand: {mode} (use install|run)")

    values: Dict[str, Any] = dict(DEFAULTS)
    values.update(defaults or {})
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    for key in _BOOL_FIELDS:
        if not isinstance(values[key], bool):
            raise ValidationError(f"'{key}' must be true or false (got '{values[key]}')")

    disk_path = Path(str(values["disk"])).expanduser()
    disk_size = validate_disk_size(str(values["size"]))
    cpus = parse_int("--cpus", values["cpus"], min_val=1)
    memory_mb = parse_int("--mem", values["mem"], min_val=128)
    vnc = values["vnc"] if isinstance(values["vnc"], VncBind) else parse_vnc_bind(str(values["vnc"]))
    monitor_port = parse_int("--monitor", values["monitor"], min_val=1, max_val=65535)
    uefi_mode = _uefi_mode(values["uefi"])

    name = str(values["name"]).strip()
    if not VM_NAME_RE.match(name):
        raise ValidationError(f"Invalid --name '{values['name']}': use letters, digits, '.', '_' or '-'")

    disk_format = str(values["disk_format"]).lower()
    if disk_format not in DISK_FORMATS:
        raise ValidationError(f"Unsupported disk_format '{disk_format}'. Supported: {', '.join(sorted(DISK_FORMATS))}")
    disk_bus = str(values["disk_bus"]).lower()
    if disk_bus not in DISK_BUSES:
        raise ValidationError(f"Unsupported disk_bus '{disk_bus}'. Supported: {', '.join(sorted(DISK_BUSES))}")
    disk_cache = str(values["disk_cache"]).lower()
    if disk_cache not in DISK_CACHE_MODES:
        raise ValidationError(
            f"Unsupported disk_cache '{disk_cache}'. Supported: {', '.join(sorted(DISK_CACHE_MODES))}"
        )

    ports = {"--monitor": monitor_port, "--vnc": vnc.port}
    if values["rdp"]:
        ports["--rdp"] = RDP_PORT
    seen: Dict[int, str] = {}
    for label, port in ports.items():
        if port in seen:
            raise ValidationError(f"Port conflict: {label} uses {port}, already taken by {seen[port]}")
        seen[port] = label

    win_iso: Optional[Path] = None
    virtio_iso: Optional[Path] = None
    if mode == MODE_INSTALL:
        win_iso = _media_path(values["win_iso"], "--win-iso", "Windows ISO")
        virtio_iso = _media_path(values["virtio_iso"], "--virtio-iso", "virtio-win ISO")
    elif values["win_iso"] or values["virtio_iso"]:
        log("WARN", "--win-iso/--virtio-iso only apply to 'install'; ignoring them for 'run'")

    return VMConfig(
        mode=mode,
        disk_path=disk_path,
        disk_size=disk_size,
        cpus=cpus,
        memory_mb=memory_mb,
        vnc=vnc,
        vnc_password=values["vnc_password"],
        monitor_port=monitor_port,
        uefi_mode=uefi_mode,
        rdp_forward=values["rdp"],
        name=name,
        win_iso=win_iso,
        virtio_iso=virtio_iso,
        disk_format=disk_format,
        disk_bus=disk_bus,
        disk_cache=disk_cache,
        nic_model=str(values["nic_model"]),
        daemonize=values["daemonize"] and mode == MODE_RUN,
        no_reboot=values["no_reboot"],
    )


def parse_ram(raw: str) -> int:
    """Convert RAM values such as '4G', '512M' or '4096' to MiB."""
    match = _RAM_RE.match((raw or "").strip())
    if not match:
        raise ValidationError(f"RAM must look like 4G, 4096M or 4096 (got '{raw}')")
    amount, unit = int(match.group(1)), match.group(2).upper()
    return amount * 1024 if unit == "G" else amount


def parse_env() -> Tuple[VMConfig, str]:
    """Build the configuration for the environment-variable entry point.

    Returns the resolved config together with the URL the base image is
    fetched from when IMG_PATH does not exist yet. A variable that is unset
    or empty takes its default.
    """
    image_url = get_env("IMG_URL") or ENV_DEFAULTS["IMG_URL"]
    img_path = Path(get_env("IMG_PATH") or ENV_DEFAULTS["IMG_PATH"]).expanduser()
    if not img_path.is_absolute():
        img_path = Path.cwd() / img_path
    memory_mb = parse_ram(get_env("RAM") or ENV_DEFAULTS["RAM"])
    cpus = parse_int_env("CPU", ENV_DEFAULTS["CPU"])
    display = parse_int_env("VNC_DISPLAY", ENV_DEFAULTS["VNC_DISPLAY"], min_val=0, max_val=MAX_VNC_DISPLAY)
    vnc_addr = (get_env("VNC_ADDR") or "").strip() or ENV_DEFAULTS["VNC_ADDR"]
    vnc = parse_vnc_bind(f"{vnc_addr}:{display}", source="VNC_ADDR/VNC_DISPLAY")

    overrides = {
        "disk": str(img_path),
        "cpus": cpus,
        "mem": memory_mb,
        "vnc": vnc,
        "rdp": True,
        "uefi": "off",
        "disk_format": "raw",
        "disk_bus": "ide",
        "disk_cache": "writeback",
        "nic_model": "e1000",
        "daemonize": False,
        "no_reboot": True,
    }
    return resolve_config(MODE_RUN, overrides), image_url
