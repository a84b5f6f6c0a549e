"""
Data models for devicedeck.

Devices, log entries and command results are immutable values. The two
session types (``RecordingSession`` and ``LogStream``) are owned exclusively
by their managers and hold the only live process handles in the system.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterable, List, Mapping, Optional

if TYPE_CHECKING:
    from devicedeck.process_runner import ProcessHandle


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ===================================================================
# Devices
# ===================================================================

class DeviceKind(str, Enum):
    IOS = "ios"
    ANDROID = "android"

    @property
    def label(self) -> str:
        return "iOS" if self is DeviceKind.IOS else "Android"


@dataclass(frozen=True)
class Device:
    """Immutable snapshot of one attached device from a single scan."""

    id: str
    display_name: str
    kind: DeviceKind
    connection_status: str
    backend_identifier: str
    attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze the attribute mapping so the snapshot cannot be mutated in place.
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def __hash__(self) -> int:
        return hash((self.id, self.display_name, self.kind, self.connection_status,
                     self.backend_identifier, tuple(sorted(self.attributes.items()))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return (
            self.id == other.id
            and self.display_name == other.display_name
            and self.kind == other.kind
            and self.connection_status == other.connection_status
            and self.backend_identifier == other.backend_identifier
            and dict(self.attributes) == dict(other.attributes)
        )

    @staticmethod
    def make_id(kind: DeviceKind, backend_identifier: str) -> str:
        return f"{kind.value}:{backend_identifier}"

    @classmethod
    def create(
        cls,
        kind: DeviceKind,
        backend_identifier: str,
        display_name: str,
        connection_status: str,
        attributes: Optional[Mapping[str, str]] = None,
    ) -> Device:
        return cls(
            id=cls.make_id(kind, backend_identifier),
            display_name=display_name,
            kind=kind,
            connection_status=connection_status,
            backend_identifier=backend_identifier,
            attributes=dict(attributes or {}),
        )

    @property
    def is_simulator(self) -> bool:
        return self.attributes.get("Connection", "").lower() == "simulator"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "connection_status": self.connection_status,
            "backend_identifier": self.backend_identifier,
            "attributes": dict(self.attributes),
        }


# ===================================================================
# Logs
# ===================================================================

class LogLevel(IntEnum):
    """Log severity, ordered from least to most severe."""

    VERBOSE = 0
    DEBUG = 1
    INFO = 2
    WARNING = 3
    ERROR = 4
    FATAL = 5

    @property
    def code(self) -> str:
        return "VDIWEF"[self.value]

    @classmethod
    def from_code(cls, code: str) -> LogLevel:
        """Map a backend level token to a level; unknown tokens become INFO."""
        token = code.strip().strip("[]<>").split(":", 1)[0].strip().lower()
        return _LEVEL_CODES.get(token, cls.INFO)

    @classmethod
    def parse(cls, value: str) -> LogLevel:
        """Parse a user-facing level name or single-letter code."""
        token = value.strip().upper()
        if token in cls.__members__:
            return cls[token]
        for level in cls:
            if level.code == token:
                return level
        raise ValueError(f"Unknown log level: {value!r}")


_LEVEL_CODES: Dict[str, LogLevel] = {
    # Android logcat
    "v": LogLevel.VERBOSE,
    "d": LogLevel.DEBUG,
    "i": LogLevel.INFO,
    "w": LogLevel.WARNING,
    "e": LogLevel.ERROR,
    "f": LogLevel.FATAL,
    "a": LogLevel.FATAL,
    # Apple unified logging (compact and long forms)
    "db": LogLevel.DEBUG,
    "df": LogLevel.INFO,
    "default": LogLevel.INFO,
    "info": LogLevel.INFO,
    "notice": LogLevel.INFO,
    "debug": LogLevel.DEBUG,
    "verbose": LogLevel.VERBOSE,
    "activity": LogLevel.VERBOSE,
    "warning": LogLevel.WARNING,
    "warn": LogLevel.WARNING,
    "error": LogLevel.ERROR,
    "fault": LogLevel.FATAL,
    "fatal": LogLevel.FATAL,
}


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: LogLevel
    tag: str
    message: str
    device_id: str

    @property
    def formatted_timestamp(self) -> str:
        return self.timestamp.strftime("%H:%M:%S.") + f"{self.timestamp.microsecond // 1000:03d}"

    def format(self) -> str:
        return f"[{self.formatted_timestamp}] [{self.level.code}] [{self.tag}]: {self.message}"

    def matches(self, min_level: Optional[LogLevel] = None, search: Optional[str] = None) -> bool:
        if min_level is not None and self.level < min_level:
            return False
        if search:
            needle = search.lower()
            return needle in self.message.lower() or needle in self.tag.lower()
        return True

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.name.lower(),
            "tag": self.tag,
            "message": self.message,
            "device_id": self.device_id,
        }


class LogBuffer:
    """Bounded, ordered store of log entries.

    Appending past capacity evicts the oldest entries first; retained entries
    keep their arrival order and are never duplicated.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._entries: Deque[LogEntry] = deque(maxlen=capacity)
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted(self) -> int:
        """Number of entries dropped to stay within capacity."""
        return self._evicted

    def append(self, entry: LogEntry) -> None:
        if len(self._entries) == self._capacity:
            self._evicted += 1
        self._entries.append(entry)

    def extend(self, entries: Iterable[LogEntry]) -> None:
        for entry in entries:
            self.append(entry)

    def snapshot(self) -> List[LogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))


# ===================================================================
# Results & sessions
# ===================================================================

@dataclass(frozen=True)
class CommandResult:
    success: bool
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict:
        return {"success": self.success, "stdout": self.stdout, "stderr": self.stderr}


@dataclass
class RecordingSession:
    """An active screen recording for one device."""

    device: Device
    process: ProcessHandle
    output_path: Path
    started_at: datetime = field(default_factory=_now_utc)
    remote_path: Optional[str] = None

    @property
    def elapsed_seconds(self) -> float:
        return (_now_utc() - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device.id,
            "output_path": str(self.output_path),
            "started_at": self.started_at.isoformat(),
            "remote_path": self.remote_path,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
        }


@dataclass
class LogStream:
    """A live log follower for one device."""

    device: Device
    process: ProcessHandle
    buffer: LogBuffer
    queue: "asyncio.Queue[Optional[str]]"
    started_at: datetime = field(default_factory=_now_utc)
    reader_task: Optional["asyncio.Task[None]"] = None
    parser_task: Optional["asyncio.Task[None]"] = None
    lines_received: int = 0
    lines_dropped: int = 0
