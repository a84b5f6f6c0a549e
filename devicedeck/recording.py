"""
Recording Session Manager: at most one screen recording per device.

Per device the lifecycle is ``idle -> recording -> stop requested -> idle``.
All operations for one device are serialised by that device's lock, so two
concurrent ``start()`` calls yield exactly one session and one
``AlreadyRecordingError``. Sessions for different devices are independent.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from devicedeck.backend import BackendSet
from devicedeck.config import Settings
from devicedeck.errors import AlreadyRecordingError, NoActiveRecordingError
from devicedeck.models import Device, RecordingSession
from devicedeck.transcoder import Transcoder

logger = logging.getLogger("devicedeck.recording")


class RecordingSessionManager:
    def __init__(self, backends: BackendSet, transcoder: Transcoder, settings: Settings) -> None:
        self.backends = backends
        self.transcoder = transcoder
        self.settings = settings
        self._sessions: Dict[str, RecordingSession] = {}
        # Locks live only while some operation on the device holds or awaits them.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, device: Device) -> AsyncIterator[None]:
        lock = self._locks.setdefault(device.id, asyncio.Lock())
        self._lock_users[device.id] = self._lock_users.get(device.id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[device.id] -= 1
            if not self._lock_users[device.id]:
                del self._lock_users[device.id]
                del self._locks[device.id]

    def _output_path(self) -> Path:
        return self.settings.temp_dir / f"devicedeck-{uuid.uuid4()}.mp4"

    # -- queries -----------------------------------------------------------------

    def is_recording(self, device: Device) -> bool:
        return device.id in self._sessions

    def session_for(self, device: Device) -> Optional[RecordingSession]:
        return self._sessions.get(device.id)

    def active_devices(self) -> List[Device]:
        return [session.device for session in self._sessions.values()]

    # -- lifecycle ------------------------------------------------------------------

    async def start(self, device: Device) -> RecordingSession:
        async with self._lock(device):
            if device.id in self._sessions:
                raise AlreadyRecordingError(device.id)
            backend = self.backends.for_device(device)
            self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
            session = await backend.start_recording(device, self._output_path())
            self._sessions[device.id] = session
            logger.info("Recording started on %s -> %s", device.id, session.output_path)
            return session

    async def stop(self, device: Device) -> Path:
        """Stop, transcode and return the final artifact path."""
        async with self._lock(device):
            session = self._sessions.get(device.id)
            if session is None:
                raise NoActiveRecordingError(device.id)
            try:
                raw = await self.backends.for_device(device).stop_recording(session)
            finally:
                self._sessions.pop(device.id, None)
                if session.process.running:
                    await session.process.stop(timeout=self.settings.recorder_stop_timeout)
            logger.info("Recording stopped on %s after %.1fs", device.id, session.elapsed_seconds)

        final = await self.transcoder.normalize(raw, device.kind)
        logger.info("Recording for %s available at %s", device.id, final)
        return final

    async def cancel(self, device: Device) -> bool:
        """Stop without transcoding and discard the artifact."""
        async with self._lock(device):
            session = self._sessions.pop(device.id, None)
            if session is None:
                return False
            try:
                raw = await self.backends.for_device(device).stop_recording(session)
            except Exception as exc:
                logger.warning("Stopping cancelled recording on %s failed: %s", device.id, exc)
                await session.process.stop(timeout=self.settings.recorder_stop_timeout)
                raw = session.output_path
            Path(raw).unlink(missing_ok=True)
            logger.info("Recording on %s cancelled", device.id)
            return True

    async def cancel_all(self) -> None:
        for device in self.active_devices():
            await self.cancel(device)
