"""
devicedeck CLI

Usage:
    devicedeck devices [--json]
    devicedeck watch
    devicedeck install <device> <app>
    devicedeck restart <device>
    devicedeck clear <device> <bundle-id>
    devicedeck exec <device> <command...>
    devicedeck screenshot <device>
    devicedeck record <device> [--duration SECONDS]
    devicedeck logs <device> [--level LEVEL] [--grep TEXT] [--export PATH] [--format text|json]
    devicedeck serve [--host HOST] [--port PORT]

<device> is a device id (``android:emulator-5554``), a backend identifier
(``emulator-5554``) or a display name.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional

from devicedeck import __version__
from devicedeck.config import configure_logging, load_settings
from devicedeck.errors import DeviceDeckError, UnknownDeviceError
from devicedeck.models import Device, LogEntry, LogLevel
from devicedeck.orchestrator import DeviceOrchestrator
from devicedeck.registry import DeviceListDiff, ScanResult

logger = logging.getLogger("devicedeck.cli")

_NO_COLOR = bool(os.environ.get("NO_COLOR"))

_RESET = "" if _NO_COLOR else "\033[0m"
_BOLD = "" if _NO_COLOR else "\033[1m"
_DIM = "" if _NO_COLOR else "\033[2m"
_RED = "" if _NO_COLOR else "\033[31m"
_GREEN = "" if _NO_COLOR else "\033[32m"
_YELLOW = "" if _NO_COLOR else "\033[33m"

_LEVEL_COLORS = {
    LogLevel.WARNING: _YELLOW,
    LogLevel.ERROR: _RED,
    LogLevel.FATAL: _RED + _BOLD,
    LogLevel.VERBOSE: _DIM,
    LogLevel.DEBUG: _DIM,
}


def _print(text: str = "") -> None:
    print(text, flush=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve(orch: DeviceOrchestrator, ident: str) -> Device:
    for device in orch.registry.devices:
        if ident in (device.id, device.backend_identifier, device.display_name):
            return device
    raise UnknownDeviceError(ident)


async def _wait_for_interrupt(duration: Optional[float] = None) -> None:
    """Return after ``duration`` seconds or on Ctrl+C, whichever comes first."""
    done = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = False
    if os.name == "posix":
        loop.add_signal_handler(signal.SIGINT, done.set)
        installed = True
    try:
        await asyncio.wait_for(done.wait(), timeout=duration)
    except asyncio.TimeoutError:
        pass
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


def _format_device(device: Device) -> str:
    extra = ", ".join(f"{k}={v}" for k, v in device.attributes.items() if v)
    return (
        f"  {_BOLD}{device.display_name}{_RESET}  {_DIM}{device.id}{_RESET}\n"
        f"    {device.kind.label} | {device.connection_status}"
        + (f" | {extra}" if extra else "")
    )


def _format_entry(entry: LogEntry) -> str:
    color = _LEVEL_COLORS.get(entry.level, "")
    return f"{color}{entry.format()}{_RESET}" if color else entry.format()


async def _with_orchestrator(
    fn: Callable[[DeviceOrchestrator], Coroutine[Any, Any, int]],
) -> int:
    orch = DeviceOrchestrator(settings=load_settings())
    await orch.start(poll=False)
    try:
        result = await orch.registry.scan_once()
        if result.error_message:
            logger.warning("Discovery: %s", result.error_message)
        return await fn(orch)
    finally:
        await orch.stop()


def _run(fn: Callable[[DeviceOrchestrator], Coroutine[Any, Any, int]]) -> int:
    try:
        return asyncio.run(_with_orchestrator(fn))
    except DeviceDeckError as exc:
        _print(f"{_RED}error:{_RESET} {exc}")
        return 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_devices(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        devices = orch.registry.devices
        if args.json:
            _print(json.dumps([d.to_dict() for d in devices], indent=2))
            return 0
        if not devices:
            _print("No devices attached.")
        for device in devices:
            _print(_format_device(device))
        if orch.registry.last_error:
            _print(f"\n{_YELLOW}warning:{_RESET} {orch.registry.last_error}")
        return 0

    return _run(go)


def _cmd_watch(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        for device in orch.registry.devices:
            _print(f"{_GREEN}+{_RESET} {device.display_name} ({device.id})")

        def on_change(diff: DeviceListDiff, result: ScanResult) -> None:
            for device in diff.added:
                _print(f"{_GREEN}+{_RESET} {device.display_name} ({device.id})")
            for device in diff.removed:
                _print(f"{_RED}-{_RESET} {device.display_name} ({device.id})")
            for device in diff.changed:
                _print(f"{_YELLOW}~{_RESET} {device.display_name} ({device.connection_status})")

        orch.registry.subscribe(on_change)
        orch.registry.start()
        _print(f"{_DIM}Watching devices, Ctrl+C to stop{_RESET}")
        await _wait_for_interrupt()
        return 0

    return _run(go)


def _cmd_install(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        await orch.commands.install_app(device, Path(args.app))
        _print(f"Installed {Path(args.app).name} on {device.display_name}")
        return 0

    return _run(go)


def _cmd_restart(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        await orch.commands.restart_device(device)
        _print(f"Restarting {device.display_name}")
        return 0

    return _run(go)


def _cmd_clear(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        await orch.commands.clear_app_data(device, args.bundle_id)
        _print(f"Cleared {args.bundle_id} on {device.display_name}")
        return 0

    return _run(go)


def _cmd_exec(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        result = await orch.commands.execute_command(device, " ".join(args.shell_command))
        if result.stdout:
            sys.stdout.write(result.stdout)
        if result.stderr:
            sys.stderr.write(result.stderr)
        return 0 if result.success else 1

    return _run(go)


def _cmd_screenshot(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        path = await orch.commands.capture_screenshot(device)
        _print(str(path))
        return 0

    return _run(go)


def _cmd_record(args: argparse.Namespace) -> int:
    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)
        await orch.recordings.start(device)
        limit = f" for {args.duration:g}s" if args.duration else ""
        _print(f"Recording {device.display_name}{limit}, Ctrl+C to stop")
        await _wait_for_interrupt(args.duration)
        path = await orch.recordings.stop(device)
        _print(str(path))
        return 0

    return _run(go)


def _cmd_logs(args: argparse.Namespace) -> int:
    try:
        level = LogLevel.parse(args.level) if args.level else None
    except ValueError as exc:
        _print(f"{_RED}error:{_RESET} {exc}")
        return 2

    async def go(orch: DeviceOrchestrator) -> int:
        device = _resolve(orch, args.device)

        def on_entry(entry: LogEntry) -> None:
            if entry.device_id == device.id and entry.matches(level, args.grep):
                _print(_format_entry(entry))

        orch.logs.subscribe(on_entry)
        await orch.logs.start(device)
        await _wait_for_interrupt(args.duration)
        await orch.logs.stop(device)
        if args.export:
            path = orch.logs.export(device, Path(args.export), fmt=args.format,
                                    level=level, search=args.grep)
            _print(f"Exported logs to {path}")
        return 0

    return _run(go)


def _cmd_serve(args: argparse.Namespace) -> int:
    from devicedeck.api import run

    run(host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devicedeck",
        description="Discover and drive locally attached iOS and Android devices.",
    )
    parser.add_argument("--version", action="version", version=f"devicedeck {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("devices", help="List attached devices")
    p.add_argument("--json", action="store_true", help="Print JSON")
    p.set_defaults(func=_cmd_devices)

    p = sub.add_parser("watch", help="Print device arrivals and departures")
    p.set_defaults(func=_cmd_watch)

    p = sub.add_parser("install", help="Install an app bundle or APK")
    p.add_argument("device")
    p.add_argument("app")
    p.set_defaults(func=_cmd_install)

    p = sub.add_parser("restart", help="Reboot a device")
    p.add_argument("device")
    p.set_defaults(func=_cmd_restart)

    p = sub.add_parser("clear", help="Clear an app's data")
    p.add_argument("device")
    p.add_argument("bundle_id")
    p.set_defaults(func=_cmd_clear)

    p = sub.add_parser("exec", help="Run a shell command on a device")
    p.add_argument("device")
    p.add_argument("shell_command", nargs=argparse.REMAINDER, metavar="command")
    p.set_defaults(func=_cmd_exec)

    p = sub.add_parser("screenshot", help="Capture a screenshot")
    p.add_argument("device")
    p.set_defaults(func=_cmd_screenshot)

    p = sub.add_parser("record", help="Record the screen until Ctrl+C")
    p.add_argument("device")
    p.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    p.set_defaults(func=_cmd_record)

    p = sub.add_parser("logs", help="Stream device logs")
    p.add_argument("device")
    p.add_argument("--level", default=None, help="Minimum level (V/D/I/W/E/F or name)")
    p.add_argument("--grep", default=None, help="Case-insensitive tag/message filter")
    p.add_argument("--duration", type=float, default=None, help="Stop after N seconds")
    p.add_argument("--export", default=None, help="Write captured entries to this file")
    p.add_argument("--format", default="text", choices=["text", "json"])
    p.set_defaults(func=_cmd_logs)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings()
    configure_logging("DEBUG" if args.verbose else settings.log_level)
    return args.func(args)


def cli() -> None:
    """Entry point for console_scripts."""
    try:
        sys.exit(main() or 0)
    except KeyboardInterrupt:
        print("\nAborted.")
        sys.exit(130)


if __name__ == "__main__":
    cli()
