"""
Backend strategy interface.

One ``DeviceBackend`` implementation exists per device kind. Everything that
differs between Apple's tooling and the Android bridge lives behind this
interface, so the registry, the session managers and the command facade never
branch on ``DeviceKind`` themselves.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from devicedeck.config import Settings
from devicedeck.models import Device, DeviceKind, LogEntry, RecordingSession
from devicedeck.process_runner import ProcessHandle, ProcessOutput, ProcessRunner

logger = logging.getLogger("devicedeck.backend")


class DeviceBackend(abc.ABC):
    """Capability interface for one family of devices."""

    kind: DeviceKind
    name: str = "backend"

    def __init__(self, runner: ProcessRunner, settings: Settings) -> None:
        self.runner = runner
        self.settings = settings

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value})"

    # -- discovery ---------------------------------------------------------

    @abc.abstractmethod
    async def discover(self) -> List[Device]:
        """List currently attached devices. Raises on backend failure."""

    # -- request/response operations --------------------------------------

    @abc.abstractmethod
    async def install(self, device: Device, app_path: Path) -> ProcessOutput: ...

    @abc.abstractmethod
    async def restart(self, device: Device) -> None: ...

    @abc.abstractmethod
    async def clear_data(self, device: Device, bundle_id: str) -> ProcessOutput: ...

    @abc.abstractmethod
    async def run_command(self, device: Device, command: str) -> ProcessOutput: ...

    @abc.abstractmethod
    async def screenshot(self, device: Device, output_path: Path) -> Path: ...

    # -- recording ----------------------------------------------------------

    @abc.abstractmethod
    async def start_recording(self, device: Device, output_path: Path) -> RecordingSession:
        """Spawn the recorder and return a session owning its process."""

    @abc.abstractmethod
    async def stop_recording(self, session: RecordingSession) -> Path:
        """Stop the recorder and return the local raw artifact path."""

    # -- logs ---------------------------------------------------------------

    @abc.abstractmethod
    def log_command(self, device: Device) -> Sequence[str]:
        """argv of the log follower process for ``device``."""

    @abc.abstractmethod
    def parse_log_line(self, line: str, device: Device) -> LogEntry:
        """Parse one follower line. Raises ParseError when malformed."""

    async def spawn_log_follower(self, device: Device) -> ProcessHandle:
        argv = list(self.log_command(device))
        return await self.runner.spawn(argv[0], argv[1:], context=device.id)


class BackendSet:
    """Maps each device kind to its backend; resolves the strategy per device."""

    def __init__(self, backends: Iterable[DeviceBackend]) -> None:
        self._by_kind: Dict[DeviceKind, DeviceBackend] = {}
        for backend in backends:
            if backend.kind in self._by_kind:
                raise ValueError(f"Duplicate backend for {backend.kind.value}")
            self._by_kind[backend.kind] = backend

    def for_kind(self, kind: DeviceKind) -> DeviceBackend:
        try:
            return self._by_kind[kind]
        except KeyError:
            raise LookupError(f"No backend registered for {kind.value}") from None

    def for_device(self, device: Device) -> DeviceBackend:
        return self.for_kind(device.kind)

    def get(self, kind: DeviceKind) -> Optional[DeviceBackend]:
        return self._by_kind.get(kind)

    def __iter__(self) -> Iterator[DeviceBackend]:
        return iter(self._by_kind.values())

    def __len__(self) -> int:
        return len(self._by_kind)


def default_backends(runner: ProcessRunner, settings: Settings) -> BackendSet:
    from devicedeck.android_backend import AndroidBackend
    from devicedeck.ios_backend import IOSBackend

    return BackendSet([IOSBackend(runner, settings), AndroidBackend(runner, settings)])
