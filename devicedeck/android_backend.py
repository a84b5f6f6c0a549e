"""
Android backend: drives devices through the Android Debug Bridge (adb).

Argument templates:
    devices -l                                   discovery
    -s <serial> shell getprop ro.product.model   display name
    -s <serial> install -r <apk>                 install
    -s <serial> shell pm clear <package>         clear app data
    -s <serial> reboot                           restart
    -s <serial> shell <command>                  arbitrary command
    -s <serial> shell screenrecord ... <remote>  recording (on-device file)
    -s <serial> pull <remote> <local>            artifact retrieval
    -s <serial> logcat -v threadtime             log streaming
    -s <serial> exec-out screencap -p            screenshot
"""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from devicedeck.backend import DeviceBackend
from devicedeck.errors import BackendNotReadyError, ParseError, ProcessError, ProcessExitError
from devicedeck.models import Device, DeviceKind, LogEntry, LogLevel, RecordingSession
from devicedeck.process_runner import ProcessOutput

logger = logging.getLogger("devicedeck.android")

DEVICE_LIST_HEADER = "List of devices attached"
READY_STATE = "device"
CONNECTED_STATUS = "Connected"

# Output fragments meaning the adb server was not (yet) serving requests.
DAEMON_NOT_READY_MARKERS = (
    "daemon not running",
    "daemon started successfully",
    "cannot connect to daemon",
)

THREADTIME_PATTERN = re.compile(
    r"^(?P<date>\d{2}-\d{2})\s+"
    r"(?P<time>\d{2}:\d{2}:\d{2}\.\d{3})\s+"
    r"(?P<pid>\d+)\s+(?P<tid>\d+)\s+"
    r"(?P<level>[VDIWEFA])\s+"
    r"(?P<tag>[^:]*?)\s*:\s?"
    r"(?P<message>.*)$"
)


@dataclass
class DeviceListRow:
    """One line of ``adb devices -l``."""

    serial: str
    state: str
    properties: Dict[str, str] = field(default_factory=dict)


def parse_device_list(output: str) -> List[DeviceListRow]:
    """Parse ``adb devices -l`` output, skipping the header and banner lines."""
    rows: List[DeviceListRow] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("*") or DEVICE_LIST_HEADER in stripped:
            continue
        parts = stripped.split()
        if len(parts) < 2:
            continue
        props: Dict[str, str] = {}
        for part in parts[2:]:
            key, sep, value = part.partition(":")
            if sep and key and value:
                props[key] = value
        rows.append(DeviceListRow(serial=parts[0], state=parts[1], properties=props))
    return rows


def parse_threadtime(line: str, device_id: str, year: Optional[int] = None) -> LogEntry:
    """Parse one ``logcat -v threadtime`` line."""
    match = THREADTIME_PATTERN.match(line)
    if not match:
        raise ParseError(line, "not a threadtime line")
    year = year or datetime.now().year
    try:
        timestamp = datetime.strptime(
            f"{year}-{match['date']} {match['time']}", "%Y-%m-%d %H:%M:%S.%f"
        )
    except ValueError as exc:
        raise ParseError(line, f"bad timestamp ({exc})") from None
    return LogEntry(
        timestamp=timestamp,
        level=LogLevel.from_code(match["level"]),
        tag=match["tag"].strip() or "System",
        message=match["message"].strip(),
        device_id=device_id,
    )


class AndroidBackend(DeviceBackend):
    kind = DeviceKind.ANDROID
    name = "Android"

    @property
    def adb(self) -> str:
        return self.settings.adb_path

    def _argv(self, device: Device, args: Sequence[str]) -> List[str]:
        return [self.adb, "-s", device.backend_identifier, *args]

    async def _adb(
        self,
        device: Device,
        args: Sequence[str],
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> ProcessOutput:
        return await self.runner.run(
            self.adb,
            self._argv(device, args)[1:],
            timeout=timeout or self.settings.command_timeout,
            check=check,
            context=device.id,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    @staticmethod
    def _daemon_not_ready(output: ProcessOutput) -> bool:
        combined = (output.text + "\n" + output.error_text).lower()
        return any(marker in combined for marker in DAEMON_NOT_READY_MARKERS)

    def _retry_delay(self, attempt: int) -> float:
        return self.settings.backend_retry_delay * (2 ** attempt)

    async def _start_server(self) -> None:
        output = await self.runner.run(
            self.adb, ["start-server"],
            timeout=self.settings.discovery_timeout, check=False, context="adb",
        )
        if not output.ok:
            logger.warning("adb start-server exited %d: %s", output.exit_code, output.error_text.strip())

    async def _list_devices(self) -> ProcessOutput:
        """Run ``adb devices -l`` with a bounded restart-and-retry on a cold daemon."""
        attempts = 0
        while True:
            attempts += 1
            output = await self.runner.run(
                self.adb, ["devices", "-l"],
                timeout=self.settings.discovery_timeout, check=False, context="adb",
            )
            if output.ok and any(row.state == READY_STATE for row in parse_device_list(output.text)):
                return output
            if not self._daemon_not_ready(output):
                if not output.ok:
                    raise ProcessExitError([self.adb, "devices", "-l"], output.exit_code, output.error_text)
                return output
            if attempts > self.settings.backend_retries:
                raise BackendNotReadyError(self.name, attempts)
            delay = self._retry_delay(attempts - 1)
            logger.info(
                "adb daemon not ready (attempt %d), restarting server and retrying in %.1fs",
                attempts, delay,
            )
            await self._start_server()
            await asyncio.sleep(delay)

    async def _model_name(self, serial: str) -> Optional[str]:
        try:
            output = await self.runner.run(
                self.adb, ["-s", serial, "shell", "getprop", "ro.product.model"],
                timeout=self.settings.discovery_timeout, context=serial,
            )
        except ProcessError as exc:
            logger.debug("Model lookup failed for %s: %s", serial, exc)
            return None
        model = output.text.strip()
        return model or None

    async def discover(self) -> List[Device]:
        output = await self._list_devices()
        listed = parse_device_list(output.text)
        rows = [row for row in listed if row.state == READY_STATE]
        for row in listed:
            if row.state != READY_STATE:
                logger.debug("Skipping %s (state %s)", row.serial, row.state)

        models = await asyncio.gather(*(self._model_name(row.serial) for row in rows))
        devices: List[Device] = []
        for row, model in zip(rows, models):
            name = model or row.properties.get("model", "").replace("_", " ") or row.serial
            attributes = {"identifier": row.serial, **row.properties}
            devices.append(Device.create(
                kind=self.kind,
                backend_identifier=row.serial,
                display_name=name,
                connection_status=CONNECTED_STATUS,
                attributes=attributes,
            ))
        return devices

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def install(self, device: Device, app_path: Path) -> ProcessOutput:
        output = await self._adb(device, ["install", "-r", str(app_path)],
                                 timeout=self.settings.install_timeout)
        # Older adb releases report install failures on stdout with exit code 0.
        if "Failure" in output.text:
            raise ProcessExitError(self._argv(device, ["install", "-r", str(app_path)]),
                                   output.exit_code or 1, output.text.strip())
        return output

    async def restart(self, device: Device) -> None:
        await self._adb(device, ["reboot"])

    async def clear_data(self, device: Device, bundle_id: str) -> ProcessOutput:
        output = await self._adb(device, ["shell", "pm", "clear", bundle_id])
        if output.text.strip().startswith("Failed"):
            raise ProcessExitError(self._argv(device, ["shell", "pm", "clear", bundle_id]),
                                   output.exit_code or 1, output.text.strip())
        return output

    async def run_command(self, device: Device, command: str) -> ProcessOutput:
        return await self._adb(device, ["shell", command])

    async def screenshot(self, device: Device, output_path: Path) -> Path:
        output = await self._adb(device, ["exec-out", "screencap", "-p"])
        if not output.stdout:
            raise ParseError("", "screencap returned no image data")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(output.stdout)
        return output_path

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _remote_path(self) -> str:
        return f"{self.settings.android_remote_dir.rstrip('/')}/devicedeck-{uuid.uuid4().hex[:12]}.mp4"

    async def start_recording(self, device: Device, output_path: Path) -> RecordingSession:
        remote = self._remote_path()
        handle = await self.runner.spawn(
            self.adb,
            [
                "-s", device.backend_identifier,
                "shell", "screenrecord",
                "--bit-rate", str(self.settings.android_bit_rate),
                "--size", self.settings.android_video_size,
                remote,
            ],
            context=device.id,
            capture_stdout=False,
        )
        return RecordingSession(device=device, process=handle, output_path=output_path, remote_path=remote)

    async def stop_recording(self, session: RecordingSession) -> Path:
        device = session.device
        remote = session.remote_path
        if remote is None:
            raise ValueError(f"Android session for {device.id} has no remote path")

        # screenrecord runs on the device; interrupt it there so the mp4 is finalized.
        try:
            await self._adb(device, ["shell", "pkill", "-INT", "screenrecord"], check=False)
        finally:
            await session.process.stop(signal.SIGINT, timeout=self.settings.recorder_stop_timeout)
        await asyncio.sleep(self.settings.device_flush_delay)

        await self._adb(device, ["pull", remote, str(session.output_path)])
        cleanup = await self._adb(device, ["shell", "rm", "-f", remote], check=False)
        if not cleanup.ok:
            logger.warning("Could not delete %s on %s: %s", remote, device.id, cleanup.error_text.strip())
        return session.output_path

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def log_command(self, device: Device) -> Sequence[str]:
        return [self.adb, "-s", device.backend_identifier, "logcat", "-v", "threadtime"]

    def parse_log_line(self, line: str, device: Device) -> LogEntry:
        return parse_threadtime(line, device.id)
