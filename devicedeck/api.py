"""
devicedeck API Server
=====================

FastAPI server exposing the device orchestrator to the UI layer: device
listing, app commands, screen recording and log capture.

Run directly:
    python -m devicedeck.api
    devicedeck serve --port 8765

Port configurable via DEVICEDECK_API_PORT (default 8765). Set
DEVICEDECK_API_AUTOSCAN=false to skip background polling; devices are then
refreshed only through ``POST /devices/scan``.
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from devicedeck import __version__
from devicedeck.config import configure_logging, load_settings
from devicedeck.errors import (
    AlreadyRecordingError,
    CommandError,
    DeviceDeckError,
    NoActiveRecordingError,
    UnknownDeviceError,
    UnsupportedFormatError,
)
from devicedeck.models import Device, LogLevel
from devicedeck.orchestrator import DeviceOrchestrator

logger = logging.getLogger("devicedeck.api")

ALLOWED_ORIGINS = os.getenv(
    "DEVICEDECK_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8765",
).split(",")

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class InstallRequest(BaseModel):
    app_path: str


class ClearDataRequest(BaseModel):
    bundle_id: str


class CommandRequest(BaseModel):
    command: str


class LogExportRequest(BaseModel):
    path: str
    format: str = "text"
    level: Optional[str] = None
    search: Optional[str] = None


# ---------------------------------------------------------------------------
# Pydantic Models -- Responses
# ---------------------------------------------------------------------------


class StatusResponse(BaseModel):
    status: str
    timestamp: str
    subsystems: Dict[str, str] = Field(default_factory=dict)
    version: str = __version__


class ActionResponse(BaseModel):
    success: bool
    message: str = ""
    data: Optional[Dict[str, Any]] = None
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the orchestrator for the lifetime of the app."""

    def __init__(self) -> None:
        self.orchestrator: Optional[DeviceOrchestrator] = None
        self.start_time: float = 0.0


state = AppState()


def build_orchestrator() -> DeviceOrchestrator:
    return DeviceOrchestrator(settings=load_settings())


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the orchestrator on startup, tear it down on shutdown."""
    state.start_time = time.monotonic()
    orchestrator = build_orchestrator()
    state.orchestrator = orchestrator
    autoscan = orchestrator.settings.api_autoscan
    await orchestrator.start(poll=autoscan)
    logger.info("devicedeck API ready (autoscan=%s)", autoscan)
    yield

    logger.info("Shutting down devicedeck API")
    await orchestrator.stop()
    state.orchestrator = None
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="devicedeck API",
    description="Discover and drive locally attached iOS and Android devices.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_orchestrator() -> DeviceOrchestrator:
    if state.orchestrator is None:
        raise HTTPException(503, "Orchestrator not initialized")
    return state.orchestrator


def _to_http(exc: DeviceDeckError) -> HTTPException:
    if isinstance(exc, UnknownDeviceError):
        return HTTPException(404, exc.message)
    if isinstance(exc, (AlreadyRecordingError, NoActiveRecordingError)):
        return HTTPException(409, exc.message)
    if isinstance(exc, UnsupportedFormatError):
        return HTTPException(400, exc.message)
    if isinstance(exc, CommandError):
        return HTTPException(502, exc.message)
    return HTTPException(500, exc.message)


def _device(device_id: str) -> Device:
    try:
        return _require_orchestrator().device(device_id)
    except UnknownDeviceError as exc:
        raise _to_http(exc) from exc


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)


# ===================================================================
# Health
# ===================================================================


@app.get("/health", response_model=StatusResponse, tags=["Health"])
async def health():
    """Server health with registry and session counts."""
    subs: Dict[str, str] = {}
    orch = state.orchestrator
    if orch is None:
        subs["orchestrator"] = "unavailable"
    else:
        subs["orchestrator"] = "ready"
        subs["polling"] = "on" if orch.registry.running else "off"
        subs["devices"] = str(len(orch.registry.devices))
        subs["recordings"] = str(len(orch.recordings.active_devices()))
        subs["log_streams"] = str(len(orch.logs.capturing_devices()))
        if orch.registry.last_error:
            subs["last_error"] = orch.registry.last_error
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    subs["uptime_seconds"] = f"{uptime:.0f}"
    return StatusResponse(status="ok", timestamp=_now_iso(), subsystems=subs)


# ===================================================================
# Devices
# ===================================================================


@app.get("/devices", tags=["Devices"])
async def list_devices():
    orch = _require_orchestrator()
    return {
        "devices": [d.to_dict() for d in orch.registry.devices],
        "last_error": orch.registry.last_error,
    }


@app.post("/devices/scan", tags=["Devices"])
async def scan_devices():
    result = await _require_orchestrator().registry.scan_once()
    return result.to_dict()


@app.post("/devices/{device_id}/install", response_model=ActionResponse, tags=["Commands"])
async def install_app(device_id: str, req: InstallRequest):
    device = _device(device_id)
    started = time.monotonic()
    try:
        await _require_orchestrator().commands.install_app(device, Path(req.app_path))
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return ActionResponse(success=True, message=f"Installed {Path(req.app_path).name}",
                          duration_ms=_elapsed_ms(started))


@app.post("/devices/{device_id}/restart", response_model=ActionResponse, tags=["Commands"])
async def restart_device(device_id: str):
    device = _device(device_id)
    started = time.monotonic()
    try:
        await _require_orchestrator().commands.restart_device(device)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return ActionResponse(success=True, message="Restart issued", duration_ms=_elapsed_ms(started))


@app.post("/devices/{device_id}/clear-data", response_model=ActionResponse, tags=["Commands"])
async def clear_app_data(device_id: str, req: ClearDataRequest):
    device = _device(device_id)
    started = time.monotonic()
    try:
        await _require_orchestrator().commands.clear_app_data(device, req.bundle_id)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return ActionResponse(success=True, message=f"Cleared {req.bundle_id}",
                          duration_ms=_elapsed_ms(started))


@app.post("/devices/{device_id}/command", response_model=ActionResponse, tags=["Commands"])
async def execute_command(device_id: str, req: CommandRequest):
    device = _device(device_id)
    started = time.monotonic()
    try:
        result = await _require_orchestrator().commands.execute_command(device, req.command)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return ActionResponse(success=result.success, data=result.to_dict(),
                          duration_ms=_elapsed_ms(started))


@app.post("/devices/{device_id}/screenshot", tags=["Commands"])
async def capture_screenshot(device_id: str):
    device = _device(device_id)
    try:
        path = await _require_orchestrator().commands.capture_screenshot(device)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return {"path": str(path), "timestamp": _now_iso()}


# ===================================================================
# Recording
# ===================================================================


@app.get("/devices/{device_id}/recording", tags=["Recording"])
async def recording_status(device_id: str):
    device = _device(device_id)
    session = _require_orchestrator().recordings.session_for(device)
    return {"recording": session is not None, "session": session.to_dict() if session else None}


@app.post("/devices/{device_id}/recording/start", tags=["Recording"])
async def start_recording(device_id: str):
    device = _device(device_id)
    try:
        session = await _require_orchestrator().recordings.start(device)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return session.to_dict()


@app.post("/devices/{device_id}/recording/stop", tags=["Recording"])
async def stop_recording(device_id: str):
    device = _device(device_id)
    try:
        path = await _require_orchestrator().recordings.stop(device)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return {"path": str(path)}


# ===================================================================
# Logs
# ===================================================================


@app.post("/devices/{device_id}/logs/start", response_model=ActionResponse, tags=["Logs"])
async def start_logs(device_id: str):
    device = _device(device_id)
    try:
        started = await _require_orchestrator().logs.start(device)
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return ActionResponse(success=True, message="started" if started else "already capturing")


@app.post("/devices/{device_id}/logs/stop", response_model=ActionResponse, tags=["Logs"])
async def stop_logs(device_id: str):
    device = _device(device_id)
    stopped = await _require_orchestrator().logs.stop(device)
    return ActionResponse(success=True, message="stopped" if stopped else "not capturing")


def _parse_level(level: Optional[str]) -> Optional[LogLevel]:
    if not level:
        return None
    try:
        return LogLevel.parse(level)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


@app.get("/devices/{device_id}/logs", tags=["Logs"])
async def get_logs(
    device_id: str,
    level: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = None,
):
    device = _device(device_id)
    logs = _require_orchestrator().logs
    entries = logs.entries(device, level=_parse_level(level), search=search, limit=limit)
    return {
        "device_id": device.id,
        "capturing": logs.is_capturing(device),
        "count": len(entries),
        "entries": [e.to_dict() for e in entries],
    }


@app.delete("/devices/{device_id}/logs", response_model=ActionResponse, tags=["Logs"])
async def clear_logs(device_id: str):
    device = _device(device_id)
    _require_orchestrator().logs.clear(device)
    return ActionResponse(success=True, message="cleared")


@app.post("/devices/{device_id}/logs/export", tags=["Logs"])
async def export_logs(device_id: str, req: LogExportRequest):
    device = _device(device_id)
    try:
        path = _require_orchestrator().logs.export(
            device, Path(req.path), fmt=req.format,
            level=_parse_level(req.level), search=req.search,
        )
    except DeviceDeckError as exc:
        raise _to_http(exc) from exc
    return {"path": str(path), "format": req.format.lower()}


# ===================================================================
# Entry Point
# ===================================================================


def run(host: str = "127.0.0.1", port: Optional[int] = None) -> None:
    import uvicorn

    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(
        "devicedeck.api:app",
        host=host,
        port=port or settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
