"""
Device Registry: periodic discovery across every backend.

Each scan runs all backends' ``discover()`` concurrently and waits for all of
them. Devices from healthy backends are published even when another backend
fails; the failures are reported through ``last_error``. The published list
is an immutable tuple swapped in a single assignment, so readers always see a
complete snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from devicedeck.backend import BackendSet
from devicedeck.models import Device, DeviceKind

logger = logging.getLogger("devicedeck.registry")


@dataclass(frozen=True)
class ScanResult:
    devices: Tuple[Device, ...]
    errors: Tuple[str, ...] = ()
    duration: float = 0.0

    @property
    def error_message(self) -> Optional[str]:
        return "; ".join(self.errors) if self.errors else None

    def to_dict(self) -> dict:
        return {
            "devices": [d.to_dict() for d in self.devices],
            "errors": list(self.errors),
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class DeviceListDiff:
    added: Tuple[Device, ...] = ()
    removed: Tuple[Device, ...] = ()
    changed: Tuple[Device, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    @classmethod
    def between(cls, old: Tuple[Device, ...], new: Tuple[Device, ...]) -> DeviceListDiff:
        before = {d.id: d for d in old}
        after = {d.id: d for d in new}
        return cls(
            added=tuple(d for d in new if d.id not in before),
            removed=tuple(d for d in old if d.id not in after),
            changed=tuple(d for d in new if d.id in before and before[d.id] != d),
        )


Subscriber = Callable[[DeviceListDiff, ScanResult], Union[None, Awaitable[None]]]


class DeviceRegistry:
    """Publishes the merged device list; polling starts only on ``start()``."""

    def __init__(self, backends: BackendSet, scan_interval: float = 2.0) -> None:
        self.backends = backends
        self.scan_interval = scan_interval
        self._devices: Tuple[Device, ...] = ()
        self._last_error: Optional[str] = None
        self._last_scan: Optional[ScanResult] = None
        self._subscribers: List[Subscriber] = []
        self._task: Optional[asyncio.Task] = None
        self._scan_lock = asyncio.Lock()

    # -- observable state ------------------------------------------------------

    @property
    def devices(self) -> Tuple[Device, ...]:
        return self._devices

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_scan(self) -> Optional[ScanResult]:
        return self._last_scan

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def find(self, device_id: str) -> Optional[Device]:
        for device in self._devices:
            if device.id == device_id:
                return device
        return None

    def find_by_backend_identifier(self, kind: DeviceKind, backend_identifier: str) -> Optional[Device]:
        for device in self._devices:
            if device.kind is kind and device.backend_identifier == backend_identifier:
                return device
        return None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback(diff, result)``; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    # -- scanning ----------------------------------------------------------------

    async def scan_once(self) -> ScanResult:
        async with self._scan_lock:
            started = time.monotonic()
            ordered = list(self.backends)
            results = await asyncio.gather(
                *(backend.discover() for backend in ordered), return_exceptions=True
            )

            merged: List[Device] = []
            seen: Dict[str, Device] = {}
            errors: List[str] = []
            for backend, outcome in zip(ordered, results):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    logger.warning("%s discovery failed: %s", backend.name, outcome)
                    errors.append(f"{backend.name}: {outcome}")
                    continue
                for device in outcome:
                    if device.id in seen:
                        logger.debug("Duplicate device id %s from %s ignored", device.id, backend.name)
                        continue
                    seen[device.id] = device
                    merged.append(device)

            result = ScanResult(
                devices=tuple(merged), errors=tuple(errors), duration=time.monotonic() - started
            )
            previous = self._devices
            self._devices = result.devices
            self._last_error = result.error_message
            self._last_scan = result

        diff = DeviceListDiff.between(previous, result.devices)
        if not diff.empty:
            logger.info(
                "Devices: %d total (+%d -%d ~%d)",
                len(result.devices), len(diff.added), len(diff.removed), len(diff.changed),
            )
        await self._notify(diff, result)
        return result

    async def _notify(self, diff: DeviceListDiff, result: ScanResult) -> None:
        for callback in list(self._subscribers):
            try:
                outcome = callback(diff, result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception("Device subscriber %r failed", callback)

    # -- lifecycle -----------------------------------------------------------------

    async def _poll(self) -> None:
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Device scan crashed")
            await asyncio.sleep(self.scan_interval)

    def start(self) -> None:
        if self.running:
            return
        logger.info("Polling devices every %.1fs", self.scan_interval)
        self._task = asyncio.get_running_loop().create_task(self._poll(), name="devicedeck-registry")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Device polling stopped")
