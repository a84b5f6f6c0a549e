"""
Shared fixtures for the devicedeck test suite.

Provides a scripted process runner, fake process handles and a fake backend
so that every test runs WITHOUT adb, xcrun, ffmpeg or an attached device.
"""

from __future__ import annotations

import asyncio
import itertools
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

from devicedeck.backend import BackendSet, DeviceBackend
from devicedeck.config import Settings
from devicedeck.errors import ParseError, ProcessExitError, ProcessTimeoutError
from devicedeck.models import Device, DeviceKind, LogEntry, LogLevel, RecordingSession
from devicedeck.process_runner import ProcessOutput

_pids = itertools.count(1000)


def out(stdout: Union[str, bytes] = "", stderr: str = "", code: int = 0) -> ProcessOutput:
    """Build a ProcessOutput from text."""
    raw = stdout.encode() if isinstance(stdout, str) else stdout
    return ProcessOutput(exit_code=code, stdout=raw, stderr=stderr.encode())


# ---------------------------------------------------------------------------
# Fake process handle
# ---------------------------------------------------------------------------

class FakeHandle:
    """Stands in for ProcessHandle.

    ``lines`` are yielded from ``lines()``; with ``hold_open`` the stream then
    blocks until the handle is signalled, otherwise it ends (natural exit).
    ``on_stop`` runs when the process is first signalled.
    """

    def __init__(
        self,
        argv: Sequence[str] = ("fake",),
        lines: Sequence[str] = (),
        hold_open: bool = False,
        on_stop: Optional[Callable[[], None]] = None,
        exit_code: int = 0,
    ) -> None:
        self.argv = list(argv)
        self.context = ""
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self._lines = list(lines)
        self._hold_open = hold_open
        self._on_stop = on_stop
        self._exit_code = exit_code
        self._exited = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.returncode is None

    def _finish(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def send_signal(self, sig: int) -> bool:
        if not self.running:
            return False
        self.signals.append(sig)
        if self._on_stop is not None:
            self._on_stop()
        self._finish(self._exit_code)
        return True

    def interrupt(self) -> bool:
        return self.send_signal(signal.SIGINT)

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    async def wait(self, timeout: Optional[float] = None) -> int:
        if self.returncode is not None:
            return self.returncode
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProcessTimeoutError(self.argv, timeout or 0.0) from None
        return self.returncode  # type: ignore[return-value]

    async def stop(self, sig: int = signal.SIGINT, timeout: float = 10.0) -> int:
        self.send_signal(sig)
        return await self.wait(timeout)

    async def lines(self):
        for line in self._lines:
            await asyncio.sleep(0)
            yield line
        if self._hold_open:
            await self._exited.wait()
        else:
            self._finish(self._exit_code)


# ---------------------------------------------------------------------------
# Scripted process runner
# ---------------------------------------------------------------------------

Response = Union[ProcessOutput, BaseException, Callable[[List[str]], ProcessOutput]]


class FakeRunner:
    """Scripted replacement for ProcessRunner.

    ``on(pattern, *responses)`` matches when ``pattern`` is a substring of the
    space-joined argv. Responses are consumed in order and the last one
    repeats. Unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.spawned: List[FakeHandle] = []
        self._rules: List[List[Any]] = []
        self._spawn_rules: List[List[Any]] = []

    def on(self, pattern: str, *responses: Response) -> "FakeRunner":
        self._rules.append([pattern, list(responses)])
        return self

    def on_spawn(self, pattern: str, factory: Callable[[List[str]], FakeHandle]) -> "FakeRunner":
        self._spawn_rules.append([pattern, factory])
        return self

    def commands(self, pattern: str = "") -> List[str]:
        return [" ".join(c) for c in self.calls if pattern in " ".join(c)]

    def _response(self, argv: List[str]) -> Optional[Response]:
        line = " ".join(argv)
        for rule in self._rules:
            pattern, responses = rule
            if pattern in line and responses:
                return responses.pop(0) if len(responses) > 1 else responses[0]
        return None

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        stdin: Optional[bytes] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        context: str = "",
    ) -> ProcessOutput:
        argv = [executable, *map(str, args)]
        self.calls.append(argv)
        await asyncio.sleep(0)
        response = self._response(argv)
        if response is None:
            result = out()
        elif isinstance(response, BaseException):
            raise response
        elif callable(response):
            result = response(argv)
        else:
            result = response
        if check and result.exit_code != 0:
            raise ProcessExitError(argv, result.exit_code, result.error_text)
        return result

    async def spawn(
        self,
        executable: str,
        args: Sequence[str] = (),
        context: str = "",
        capture_stdout: bool = True,
    ) -> FakeHandle:
        argv = [executable, *map(str, args)]
        self.calls.append(argv)
        line = " ".join(argv)
        handle = None
        for pattern, factory in self._spawn_rules:
            if pattern in line:
                handle = factory(argv)
                break
        if handle is None:
            handle = FakeHandle(argv)
        handle.argv = argv
        self.spawned.append(handle)
        return handle


# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------

class FakeBackend(DeviceBackend):
    """In-memory backend; log lines use the shape ``LEVEL|tag|message``."""

    def __init__(
        self,
        kind: DeviceKind,
        settings: Settings,
        devices: Sequence[Device] = (),
        name: Optional[str] = None,
    ) -> None:
        super().__init__(FakeRunner(), settings)
        self.kind = kind
        self.name = name or kind.label
        self.devices = list(devices)
        self.discover_error: Optional[BaseException] = None
        self.discover_delay = 0.0
        self.command_error: Optional[BaseException] = None
        self.stop_error: Optional[BaseException] = None
        self.stop_before_process = False
        self.start_delay = 0.0
        self.spawn_delay = 0.0
        self.log_lines: List[str] = []
        self.hold_logs = True
        self.calls: List[tuple] = []
        self.handles: List[FakeHandle] = []

    async def discover(self) -> List[Device]:
        await asyncio.sleep(self.discover_delay)
        if self.discover_error is not None:
            raise self.discover_error
        return list(self.devices)

    async def _command(self, *call: Any) -> ProcessOutput:
        self.calls.append(call)
        if self.command_error is not None:
            raise self.command_error
        return out(f"ok {call[0]}\n")

    async def install(self, device: Device, app_path: Path) -> ProcessOutput:
        return await self._command("install", device.id, app_path)

    async def restart(self, device: Device) -> None:
        await self._command("restart", device.id)

    async def clear_data(self, device: Device, bundle_id: str) -> ProcessOutput:
        return await self._command("clear", device.id, bundle_id)

    async def run_command(self, device: Device, command: str) -> ProcessOutput:
        return await self._command("command", device.id, command)

    async def screenshot(self, device: Device, output_path: Path) -> Path:
        await self._command("screenshot", device.id)
        output_path.write_bytes(b"\x89PNG fake")
        return output_path

    async def start_recording(self, device: Device, output_path: Path) -> RecordingSession:
        await asyncio.sleep(self.start_delay)
        handle = FakeHandle(["fake-record", device.backend_identifier, str(output_path)])
        self.handles.append(handle)
        self.calls.append(("start_recording", device.id))
        return RecordingSession(device=device, process=handle, output_path=output_path)

    async def stop_recording(self, session: RecordingSession) -> Path:
        self.calls.append(("stop_recording", session.device.id))
        if self.stop_before_process and self.stop_error is not None:
            raise self.stop_error
        await session.process.stop()
        if self.stop_error is not None:
            raise self.stop_error
        session.output_path.write_bytes(b"raw video")
        return session.output_path

    def log_command(self, device: Device) -> Sequence[str]:
        return ["fake-log", device.backend_identifier]

    async def spawn_log_follower(self, device: Device) -> FakeHandle:
        await asyncio.sleep(self.spawn_delay)
        handle = FakeHandle(self.log_command(device), lines=self.log_lines, hold_open=self.hold_logs)
        self.handles.append(handle)
        return handle

    def parse_log_line(self, line: str, device: Device) -> LogEntry:
        parts = line.split("|", 2)
        if len(parts) != 3:
            raise ParseError(line, "expected LEVEL|tag|message")
        return LogEntry(
            timestamp=datetime(2024, 5, 1, 12, 0, 0, 123000),
            level=LogLevel.from_code(parts[0]),
            tag=parts[1],
            message=parts[2],
            device_id=device.id,
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_device(kind: DeviceKind = DeviceKind.ANDROID, ident: str = "emulator-5554",
                name: str = "Pixel 7", **attributes: str) -> Device:
    return Device.create(kind=kind, backend_identifier=ident, display_name=name,
                         connection_status="Connected", attributes=attributes)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        xcrun_path="xcrun",
        adb_path="adb",
        ffmpeg_path="ffmpeg",
        idevicescreenshot_path="idevicescreenshot",
        temp_dir=tmp_path,
        restart_pause=0.0,
        device_flush_delay=0.0,
        backend_retry_delay=0.0,
        recorder_stop_timeout=1.0,
        log_buffer_capacity=5,
        log_queue_size=8,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def android_device() -> Device:
    return make_device(DeviceKind.ANDROID, "emulator-5554", "Pixel 7")


@pytest.fixture
def ios_device() -> Device:
    return make_device(DeviceKind.IOS, "00008110-000A1B2C3D4E", "Test iPhone",
                       Type="iPhone 15", Class="iPhone", Connection="wired", Platform="iOS")


@pytest.fixture
def simulator() -> Device:
    return make_device(DeviceKind.IOS, "5A1B2C3D-SIM", "iPhone 15 Sim",
                       Type="iPhone 15", Class="iPhone", Connection="simulator", Platform="iOS 17.0")


@pytest.fixture
def fake_android(settings, android_device) -> FakeBackend:
    return FakeBackend(DeviceKind.ANDROID, settings, devices=[android_device])


@pytest.fixture
def fake_ios(settings, ios_device) -> FakeBackend:
    return FakeBackend(DeviceKind.IOS, settings, devices=[ios_device])


@pytest.fixture
def backends(fake_ios, fake_android) -> BackendSet:
    return BackendSet([fake_ios, fake_android])


@pytest.fixture
def threadtime_sample() -> Dict[str, str]:
    return {
        "ok": "05-01 12:34:56.789  1234  5678 I ActivityManager: Start proc 4321:com.example/u0a123",
        "warn": "05-01 12:34:57.001  1234  5679 W System.err: java.io.IOException: boom",
        "padded": "05-01 12:34:57.500   987   987 E chromium    : [ERROR:foo.cc(12)] bad",
        "banner": "--------- beginning of main",
    }
