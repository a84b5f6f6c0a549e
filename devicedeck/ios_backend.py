"""
iOS backend: physical devices through ``xcrun devicectl`` and booted
simulators through ``xcrun simctl``.

Simulators carry the attribute ``Connection=simulator`` and every operation
routes on ``Device.is_simulator``:

    operation      simulator                               physical device
    -----------    ------------------------------------    ------------------------------------------
    install        simctl install <id> <app>               devicectl device install app --device <id> <app>
    clear data     simctl uninstall <id> <bundle>          devicectl device uninstall app --device <id> <bundle>
    restart        simctl shutdown|boot <id>               devicectl device shutdown|boot --device <id>
    command        simctl spawn <id> /bin/sh -c <cmd>      devicectl device process launch --device <id> <argv>
    screenshot     simctl io <id> screenshot <path>        idevicescreenshot -u <udid> <path>

Recording and log streaming always go through simctl.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import signal
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from devicedeck.backend import DeviceBackend
from devicedeck.errors import ParseError, ProcessError, ProcessExitError
from devicedeck.models import Device, DeviceKind, LogEntry, LogLevel, RecordingSession
from devicedeck.process_runner import ProcessOutput

logger = logging.getLogger("devicedeck.ios")

HANDHELD_CLASSES = ("iPhone", "iPad")
SIMULATOR_CONNECTION = "simulator"
DEFAULT_TAG = "System"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^(\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,6}))?")
_RUNTIME_RE = re.compile(r"SimRuntime\.(?P<os>[A-Za-z]+)-(?P<version>[\d-]+)$")


# ---------------------------------------------------------------------------
# Discovery parsing
# ---------------------------------------------------------------------------

def _flatten_descriptor(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce devicectl's nested device record to the flat descriptor shape."""
    if not any(k in raw for k in ("deviceProperties", "hardwareProperties", "connectionProperties")):
        return raw
    hardware = raw.get("hardwareProperties") or {}
    props = raw.get("deviceProperties") or {}
    connection = raw.get("connectionProperties") or {}
    return {
        "identifier": raw.get("identifier") or hardware.get("udid"),
        "udid": hardware.get("udid"),
        "name": props.get("name"),
        "deviceType": hardware.get("marketingName") or hardware.get("productType"),
        "deviceClass": hardware.get("deviceType"),
        "connectionType": connection.get("transportType"),
        "platform": hardware.get("platform"),
        "status": connection.get("tunnelState") or connection.get("pairingState"),
    }


def _descriptors(payload: Any) -> Iterator[Dict[str, Any]]:
    if not isinstance(payload, dict):
        raise ParseError(str(payload), "device list is not a JSON object")
    container = payload.get("result") if isinstance(payload.get("result"), dict) else payload
    devices = container.get("devices", [])
    if not isinstance(devices, list):
        raise ParseError(str(devices), "'devices' is not a list")
    for raw in devices:
        if isinstance(raw, dict):
            yield _flatten_descriptor(raw)


def parse_devicectl_devices(payload: Any) -> List[Device]:
    """Build handheld ``Device`` values from a devicectl JSON document."""
    devices: List[Device] = []
    for desc in _descriptors(payload):
        device_class = desc.get("deviceClass") or ""
        if device_class not in HANDHELD_CLASSES:
            continue
        identifier = desc.get("identifier")
        name = desc.get("name")
        if not identifier or not name:
            logger.debug("Skipping devicectl record without identifier/name: %s", desc)
            continue
        attributes = {
            "Type": desc.get("deviceType") or "",
            "Class": device_class,
            "Connection": desc.get("connectionType") or "",
            "Platform": desc.get("platform") or "",
        }
        if desc.get("udid"):
            attributes["UDID"] = desc["udid"]
        devices.append(Device.create(
            kind=DeviceKind.IOS,
            backend_identifier=identifier,
            display_name=name,
            connection_status=desc.get("status") or "unknown",
            attributes=attributes,
        ))
    return devices


def _runtime_label(runtime: str) -> str:
    match = _RUNTIME_RE.search(runtime)
    if not match:
        return runtime
    return f"{match['os']} {match['version'].replace('-', '.')}"


def parse_simctl_booted(payload: Any) -> List[Device]:
    """Build ``Device`` values from ``simctl list devices booted --json``."""
    if not isinstance(payload, dict) or not isinstance(payload.get("devices"), dict):
        raise ParseError(str(payload)[:200], "unexpected simctl device list")
    devices: List[Device] = []
    for runtime, sims in payload["devices"].items():
        for sim in sims or []:
            if sim.get("state") != "Booted":
                continue
            type_id = sim.get("deviceTypeIdentifier") or sim.get("name") or ""
            device_class = next((c for c in HANDHELD_CLASSES if c in type_id), None)
            if device_class is None or not sim.get("udid"):
                continue
            devices.append(Device.create(
                kind=DeviceKind.IOS,
                backend_identifier=sim["udid"],
                display_name=sim.get("name") or sim["udid"],
                connection_status=sim["state"],
                attributes={
                    "Type": sim.get("name") or "",
                    "Class": device_class,
                    "Connection": SIMULATOR_CONNECTION,
                    "Platform": _runtime_label(runtime),
                },
            ))
    return devices


# ---------------------------------------------------------------------------
# Log parsing
# ---------------------------------------------------------------------------

def _parse_timestamp(date: str, time: str) -> datetime:
    if not _DATE_RE.match(date):
        raise ValueError(f"bad date {date!r}")
    match = _TIME_RE.match(time)
    if not match:
        raise ValueError(f"bad time {time!r}")
    hour, minute, second, fraction = match.groups()
    micro = int((fraction or "0").ljust(6, "0"))
    year, month, day = (int(p) for p in date.split("-"))
    return datetime(year, month, day, int(hour), int(minute), int(second), micro)


def _split_tag(rest: str) -> Tuple[str, str]:
    head, _, tail = rest.partition(" ")
    if not tail:
        return DEFAULT_TAG, rest.strip()
    tag = head.rstrip(":")
    if tag.endswith("]") and "[" in tag:
        tag = tag[:tag.index("[")]
    return (tag or DEFAULT_TAG), tail.strip()


def parse_compact_line(line: str, device_id: str) -> LogEntry:
    """Parse one ``log stream --style compact`` line.

    Shape: ``<date> <time> <level> <tag>: <message>`` where the level token
    is bare (``Df``, ``E``) or bracketed (``[Error]``, ``[Error:Tag]``).
    """
    tokens = line.split(None, 3)
    if len(tokens) < 4:
        raise ParseError(line, "too few fields")
    date, time, level_token, rest = tokens
    try:
        timestamp = _parse_timestamp(date, time)
    except ValueError as exc:
        raise ParseError(line, str(exc)) from None

    tag: Optional[str] = None
    if level_token.startswith("["):
        inner = level_token.strip("[]")
        level_part, _, bracket_tag = inner.partition(":")
        level = LogLevel.from_code(level_part)
        if bracket_tag:
            tag, message = bracket_tag, rest.strip()
    else:
        level = LogLevel.from_code(level_token)
    if tag is None:
        tag, message = _split_tag(rest)

    return LogEntry(timestamp=timestamp, level=level, tag=tag, message=message, device_id=device_id)


# ===================================================================
# IOSBackend
# ===================================================================

class IOSBackend(DeviceBackend):
    kind = DeviceKind.IOS
    name = "iOS"

    @property
    def xcrun(self) -> str:
        return self.settings.xcrun_path

    async def _xcrun(self, args: Sequence[str], context: str = "",
                     timeout: Optional[float] = None, check: bool = True) -> ProcessOutput:
        return await self.runner.run(
            self.xcrun, list(args),
            timeout=timeout or self.settings.command_timeout,
            check=check, context=context,
        )

    # -- discovery ---------------------------------------------------------

    async def _physical_devices(self) -> List[Device]:
        fd, name = tempfile.mkstemp(prefix="devicedeck-devicectl-", suffix=".json",
                                    dir=str(self.settings.temp_dir))
        os.close(fd)
        json_path = Path(name)
        try:
            await self._xcrun(
                ["devicectl", "list", "devices", "--json-output", str(json_path)],
                context="devicectl", timeout=self.settings.discovery_timeout,
            )
            raw = json_path.read_text(encoding="utf-8")
        finally:
            json_path.unlink(missing_ok=True)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(raw, f"invalid devicectl JSON ({exc})") from None
        return parse_devicectl_devices(payload)

    async def _booted_simulators(self) -> List[Device]:
        output = await self._xcrun(
            ["simctl", "list", "devices", "booted", "--json"],
            context="simctl", timeout=self.settings.discovery_timeout,
        )
        try:
            payload = json.loads(output.text)
        except json.JSONDecodeError as exc:
            raise ParseError(output.text, f"invalid simctl JSON ({exc})") from None
        return parse_simctl_booted(payload)

    async def discover(self) -> List[Device]:
        """Physical devices then booted simulators; one source failing does not hide the other."""
        if not self.settings.include_simulators:
            return await self._physical_devices()
        try:
            devices = await self._physical_devices()
        except (ProcessError, ParseError) as physical_exc:
            try:
                simulators = await self._booted_simulators()
            except (ProcessError, ParseError) as exc:
                logger.warning("Simulator listing failed: %s", exc)
                raise physical_exc
            logger.warning("devicectl listing failed, showing simulators only: %s", physical_exc)
            return simulators
        try:
            devices.extend(await self._booted_simulators())
        except (ProcessError, ParseError) as exc:
            logger.warning("Simulator listing failed: %s", exc)
        return devices

    # -- commands ------------------------------------------------------------

    async def install(self, device: Device, app_path: Path) -> ProcessOutput:
        if device.is_simulator:
            args = ["simctl", "install", device.backend_identifier, str(app_path)]
        else:
            args = ["devicectl", "device", "install", "app",
                    "--device", device.backend_identifier, str(app_path)]
        return await self._xcrun(args, context=device.id, timeout=self.settings.install_timeout)

    def _power_args(self, device: Device, verb: str) -> List[str]:
        if device.is_simulator:
            return ["simctl", verb, device.backend_identifier]
        return ["devicectl", "device", verb, "--device", device.backend_identifier]

    async def restart(self, device: Device) -> None:
        # A failed shutdown propagates and boot is never attempted.
        await self._xcrun(self._power_args(device, "shutdown"), context=device.id)
        await asyncio.sleep(self.settings.restart_pause)
        await self._xcrun(self._power_args(device, "boot"), context=device.id)

    async def clear_data(self, device: Device, bundle_id: str) -> ProcessOutput:
        if device.is_simulator:
            args = ["simctl", "uninstall", device.backend_identifier, bundle_id]
        else:
            args = ["devicectl", "device", "uninstall", "app",
                    "--device", device.backend_identifier, bundle_id]
        return await self._xcrun(args, context=device.id)

    async def run_command(self, device: Device, command: str) -> ProcessOutput:
        if device.is_simulator:
            args = ["simctl", "spawn", device.backend_identifier, "/bin/sh", "-c", command]
        else:
            try:
                argv = shlex.split(command)
            except ValueError as exc:
                raise ParseError(command, str(exc)) from None
            args = ["devicectl", "device", "process", "launch",
                    "--device", device.backend_identifier, *argv]
        return await self._xcrun(args, context=device.id)

    async def screenshot(self, device: Device, output_path: Path) -> Path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if device.is_simulator:
            await self._xcrun(
                ["simctl", "io", device.backend_identifier, "screenshot", str(output_path)],
                context=device.id,
            )
        else:
            udid = device.attributes.get("UDID") or device.backend_identifier
            await self.runner.run(
                self.settings.idevicescreenshot_path, ["-u", udid, str(output_path)],
                timeout=self.settings.command_timeout, context=device.id,
            )
        if not output_path.exists():
            raise ParseError(str(output_path), "screenshot tool produced no file")
        return output_path

    # -- recording -------------------------------------------------------------

    async def start_recording(self, device: Device, output_path: Path) -> RecordingSession:
        handle = await self.runner.spawn(
            self.xcrun,
            ["simctl", "io", device.backend_identifier, "recordVideo",
             "--codec", "h264", "--mask", "ignored", "--force", str(output_path)],
            context=device.id,
            capture_stdout=False,
        )
        return RecordingSession(device=device, process=handle, output_path=output_path)

    async def stop_recording(self, session: RecordingSession) -> Path:
        handle = session.process
        code = await handle.stop(signal.SIGINT, timeout=self.settings.recorder_stop_timeout)
        if not session.output_path.exists():
            raise ProcessExitError(handle.argv, code, "recorder produced no output file")
        return session.output_path

    # -- logs ----------------------------------------------------------------

    def log_command(self, device: Device) -> Sequence[str]:
        return [self.xcrun, "simctl", "spawn", device.backend_identifier,
                "log", "stream", "--level", "debug", "--style", "compact"]

    def parse_log_line(self, line: str, device: Device) -> LogEntry:
        return parse_compact_line(line, device.id)
