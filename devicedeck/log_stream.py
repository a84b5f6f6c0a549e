"""
Log Stream Manager: live log capture, one follower process per device.

For every capturing device two tasks run on the event loop:

    reader   pulls decoded lines from the follower's stdout into a bounded
             queue (``Settings.log_queue_size``); a full queue makes the
             reader wait, which in turn back-pressures the pipe
    parser   drains the queue, parses each line with the device's backend
             and appends the entry to the device's ``LogBuffer``

The reader closes the queue with ``None`` at EOF; the parser then finishes
the stream and drops the session. Buffers outlive their sessions and are
only emptied by ``clear()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Callable, Dict, List, Optional

from devicedeck.backend import BackendSet
from devicedeck.config import Settings
from devicedeck.errors import ParseError, UnsupportedFormatError
from devicedeck.models import Device, LogBuffer, LogEntry, LogLevel, LogStream

logger = logging.getLogger("devicedeck.logs")

EXPORT_FORMATS = ("text", "json")

EntryCallback = Callable[[LogEntry], None]


class LogStreamManager:
    def __init__(self, backends: BackendSet, settings: Settings) -> None:
        self.backends = backends
        self.settings = settings
        self._streams: Dict[str, LogStream] = {}
        self._buffers: Dict[str, LogBuffer] = {}
        self._subscribers: List[EntryCallback] = []

    # ------------------------------------------------------------------
    # Buffers & queries
    # ------------------------------------------------------------------

    def buffer_for(self, device: Device) -> LogBuffer:
        buffer = self._buffers.get(device.id)
        if buffer is None:
            buffer = self._buffers[device.id] = LogBuffer(self.settings.log_buffer_capacity)
        return buffer

    def is_capturing(self, device: Device) -> bool:
        return device.id in self._streams

    def stream_for(self, device: Device) -> Optional[LogStream]:
        return self._streams.get(device.id)

    def capturing_devices(self) -> List[Device]:
        return [stream.device for stream in self._streams.values()]

    def entries(
        self,
        device: Device,
        level: Optional[LogLevel] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LogEntry]:
        """Retained entries in arrival order, optionally filtered.

        ``level`` is a minimum severity; ``search`` matches tag or message
        case-insensitively; ``limit`` keeps the newest N matches.
        """
        buffer = self._buffers.get(device.id)
        if buffer is None:
            return []
        matched = [e for e in buffer.snapshot() if e.matches(level, search)]
        if limit is not None:
            matched = matched[-limit:] if limit > 0 else []
        return matched

    def clear(self, device: Device) -> None:
        buffer = self._buffers.get(device.id)
        if buffer is not None:
            buffer.clear()

    def subscribe(self, callback: EntryCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Capture lifecycle
    # ------------------------------------------------------------------

    async def start(self, device: Device) -> bool:
        """Begin capture; returns False when this device is already capturing."""
        if device.id in self._streams:
            logger.debug("Log capture already running for %s", device.id)
            return False
        backend = self.backends.for_device(device)
        process = await backend.spawn_log_follower(device)
        if device.id in self._streams:
            # Lost a race with a concurrent start for the same device.
            await process.stop(signal.SIGTERM, timeout=self.settings.recorder_stop_timeout)
            return False

        stream = LogStream(
            device=device,
            process=process,
            buffer=self.buffer_for(device),
            queue=asyncio.Queue(maxsize=self.settings.log_queue_size),
        )
        self._streams[device.id] = stream
        loop = asyncio.get_running_loop()
        stream.reader_task = loop.create_task(self._read(stream), name=f"logs-reader-{device.id}")
        stream.parser_task = loop.create_task(self._parse(stream), name=f"logs-parser-{device.id}")
        logger.info("Log capture started for %s (pid %d)", device.id, process.pid)
        return True

    async def stop(self, device: Device) -> bool:
        """Stop capture; returns False when nothing was capturing."""
        stream = self._streams.pop(device.id, None)
        if stream is None:
            return False
        await self._shutdown(stream)
        logger.info(
            "Log capture stopped for %s (%d lines, %d malformed)",
            device.id, stream.lines_received, stream.lines_dropped,
        )
        return True

    async def stop_all(self) -> None:
        for device in self.capturing_devices():
            await self.stop(device)

    async def _shutdown(self, stream: LogStream) -> None:
        tasks = [t for t in (stream.reader_task, stream.parser_task) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await stream.process.stop(signal.SIGTERM, timeout=self.settings.recorder_stop_timeout)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _read(self, stream: LogStream) -> None:
        try:
            async for line in stream.process.lines():
                stream.lines_received += 1
                await stream.queue.put(line)
        except (OSError, ValueError) as exc:
            logger.warning("Reading logs from %s failed: %s", stream.device.id, exc)
        await stream.queue.put(None)

    async def _parse(self, stream: LogStream) -> None:
        backend = self.backends.for_device(stream.device)
        while True:
            line = await stream.queue.get()
            if line is None:
                break
            if not line.strip():
                continue
            try:
                entry = backend.parse_log_line(line, stream.device)
            except ParseError as exc:
                stream.lines_dropped += 1
                logger.debug("Dropped log line from %s: %s", stream.device.id, exc.reason)
                continue
            stream.buffer.append(entry)
            self._publish(entry)

        # Follower hit EOF on its own.
        if self._streams.get(stream.device.id) is stream:
            del self._streams[stream.device.id]
            code = await stream.process.wait()
            logger.info("Log follower for %s exited with code %s", stream.device.id, code)

    def _publish(self, entry: LogEntry) -> None:
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception:
                logger.exception("Log subscriber %r failed", callback)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self, device: Device, path: Path, fmt: str = "text",
               level: Optional[LogLevel] = None, search: Optional[str] = None) -> Path:
        fmt = fmt.lower()
        if fmt not in EXPORT_FORMATS:
            raise UnsupportedFormatError(fmt, EXPORT_FORMATS)
        entries = self.entries(device, level=level, search=search)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if fmt == "json":
            path.write_text(json.dumps([e.to_dict() for e in entries], indent=2), encoding="utf-8")
        else:
            path.write_text("".join(e.format() + "\n" for e in entries), encoding="utf-8")
        logger.info("Exported %d log entries for %s to %s", len(entries), device.id, path)
        return path
