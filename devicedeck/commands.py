"""
Device Command Facade: request/response operations against one device.

Every operation resolves the device's backend, runs to completion and either
returns a result or raises ``CommandError`` carrying the tool's stderr.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from devicedeck.backend import BackendSet
from devicedeck.config import Settings
from devicedeck.errors import CommandError, ParseError, ProcessError, ProcessExitError
from devicedeck.models import CommandResult, Device

logger = logging.getLogger("devicedeck.commands")


def _stderr_of(exc: Exception) -> str:
    if isinstance(exc, ProcessExitError):
        return exc.stderr_text
    return ""


class DeviceCommandFacade:
    def __init__(self, backends: BackendSet, settings: Settings) -> None:
        self.backends = backends
        self.settings = settings

    def _fail(self, operation: str, device: Device, exc: Exception) -> CommandError:
        logger.error("%s failed on %s: %s", operation, device.id, exc)
        return CommandError(
            f"{operation} failed on {device.display_name}: {exc}",
            stderr=_stderr_of(exc),
            operation=operation,
            device_id=device.id,
        )

    async def install_app(self, device: Device, app_path: Path) -> None:
        app_path = Path(app_path)
        if not app_path.exists():
            raise CommandError(f"App bundle not found: {app_path}", operation="install", device_id=device.id)
        try:
            await self.backends.for_device(device).install(device, app_path)
        except (ProcessError, ParseError) as exc:
            raise self._fail("install", device, exc) from exc
        logger.info("Installed %s on %s", app_path.name, device.id)

    async def restart_device(self, device: Device) -> None:
        try:
            await self.backends.for_device(device).restart(device)
        except (ProcessError, ParseError) as exc:
            raise self._fail("restart", device, exc) from exc
        logger.info("Restart issued to %s", device.id)

    async def clear_app_data(self, device: Device, bundle_id: str) -> None:
        if not bundle_id.strip():
            raise CommandError("Bundle identifier is empty", operation="clear-data", device_id=device.id)
        try:
            await self.backends.for_device(device).clear_data(device, bundle_id.strip())
        except (ProcessError, ParseError) as exc:
            raise self._fail("clear-data", device, exc) from exc
        logger.info("Cleared data for %s on %s", bundle_id, device.id)

    async def execute_command(self, device: Device, command: str) -> CommandResult:
        try:
            output = await self.backends.for_device(device).run_command(device, command)
        except (ProcessError, ParseError) as exc:
            raise self._fail("command", device, exc) from exc
        return CommandResult(success=True, stdout=output.text, stderr=output.error_text)

    async def capture_screenshot(self, device: Device) -> Path:
        self.settings.temp_dir.mkdir(parents=True, exist_ok=True)
        path = self.settings.temp_dir / f"devicedeck-screenshot-{uuid.uuid4()}.png"
        try:
            result = await self.backends.for_device(device).screenshot(device, path)
        except (ProcessError, ParseError) as exc:
            path.unlink(missing_ok=True)
            raise self._fail("screenshot", device, exc) from exc
        logger.info("Screenshot of %s saved to %s", device.id, result)
        return result
