"""
DeviceOrchestrator: wires every devicedeck component together.

One orchestrator owns the process runner, the backends, the registry, both
session managers, the transcoder and the command facade. Collaborators can
be injected for tests; nothing is a module-level singleton.

Usage:
    async with DeviceOrchestrator() as deck:
        await deck.registry.scan_once()
        device = deck.device("android:emulator-5554")
        await deck.recordings.start(device)
"""

from __future__ import annotations

import logging
from typing import Optional

from devicedeck.backend import BackendSet, default_backends
from devicedeck.commands import DeviceCommandFacade
from devicedeck.config import Settings, load_settings
from devicedeck.errors import UnknownDeviceError
from devicedeck.log_stream import LogStreamManager
from devicedeck.models import Device
from devicedeck.process_runner import ProcessRunner
from devicedeck.recording import RecordingSessionManager
from devicedeck.registry import DeviceRegistry
from devicedeck.transcoder import Transcoder

logger = logging.getLogger("devicedeck.orchestrator")


class DeviceOrchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        runner: Optional[ProcessRunner] = None,
        backends: Optional[BackendSet] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.runner = runner or ProcessRunner(default_timeout=self.settings.command_timeout)
        self.backends = backends or default_backends(self.runner, self.settings)
        self.registry = DeviceRegistry(self.backends, scan_interval=self.settings.scan_interval)
        self.transcoder = Transcoder(self.runner, self.settings)
        self.recordings = RecordingSessionManager(self.backends, self.transcoder, self.settings)
        self.logs = LogStreamManager(self.backends, self.settings)
        self.commands = DeviceCommandFacade(self.backends, self.settings)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def device(self, device_id: str) -> Device:
        device = self.registry.find(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        return device

    async def start(self, poll: bool = True) -> None:
        if self._started:
            return
        self._started = True
        if poll:
            self.registry.start()
        logger.info("Orchestrator started (%d backends)", len(self.backends))

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.registry.stop()
        await self.logs.stop_all()
        await self.recordings.cancel_all()
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> DeviceOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
