"""
Configuration for devicedeck.

Every tunable lives on the ``Settings`` dataclass. ``load_settings()`` reads
``DEVICEDECK_*`` environment variables and falls back to the defaults below,
so a bare ``Settings()`` is always usable (tests construct it directly).

Environment:
    DEVICEDECK_XCRUN              Path to xcrun (default: which xcrun or /usr/bin/xcrun)
    DEVICEDECK_ADB                Path to adb (default: which adb or /usr/local/bin/adb)
    DEVICEDECK_FFMPEG             Path to ffmpeg (default: which ffmpeg or /usr/local/bin/ffmpeg)
    DEVICEDECK_IDEVICESCREENSHOT  Path to idevicescreenshot
    DEVICEDECK_SCAN_INTERVAL      Seconds between device scans (default 2.0)
    DEVICEDECK_LOG_CAPACITY       Log entries retained per device (default 1000)
    DEVICEDECK_COMMAND_TIMEOUT    Seconds allowed per blocking command (default 120)
    DEVICEDECK_TEMP_DIR           Where recordings and screenshots are written
    DEVICEDECK_API_PORT           HTTP port for ``devicedeck serve`` (default 8765)
    DEVICEDECK_API_AUTOSCAN       Start device polling with the API (default true)
    DEVICEDECK_LOG_LEVEL          Root log level for the entry points (default INFO)
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger("devicedeck.config")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

ENV_PREFIX = "DEVICEDECK_"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tool(name: str, fallback: str) -> str:
    return shutil.which(name) or fallback


def _env(name: str) -> str | None:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r (using %s)", ENV_PREFIX, name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r (using %s)", ENV_PREFIX, name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    """Runtime configuration shared by every devicedeck component."""

    # External tools
    xcrun_path: str = field(default_factory=lambda: _tool("xcrun", "/usr/bin/xcrun"))
    adb_path: str = field(default_factory=lambda: _tool("adb", "/usr/local/bin/adb"))
    ffmpeg_path: str = field(default_factory=lambda: _tool("ffmpeg", "/usr/local/bin/ffmpeg"))
    idevicescreenshot_path: str = field(
        default_factory=lambda: _tool("idevicescreenshot", "/usr/local/bin/idevicescreenshot")
    )

    # Discovery
    scan_interval: float = 2.0
    discovery_timeout: float = 15.0
    include_simulators: bool = True
    backend_retries: int = 1
    backend_retry_delay: float = 1.0

    # Blocking commands
    command_timeout: float = 120.0
    install_timeout: float = 600.0
    restart_pause: float = 2.0

    # Recording
    recorder_stop_timeout: float = 10.0
    device_flush_delay: float = 1.5
    android_bit_rate: int = 8_000_000
    android_video_size: str = "1280x720"
    android_remote_dir: str = "/sdcard"

    # Log streaming
    log_buffer_capacity: int = 1000
    log_queue_size: int = 2048

    # Transcoding
    transcode_timeout: float = 300.0
    transcode_preset: str = "medium"
    transcode_crf: int = 23
    transcode_audio_bitrate: str = "128k"
    ios_max_width: int = 1080
    android_max_width: int = 1280

    # Files
    temp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    # Entry points
    api_port: int = 8765
    api_autoscan: bool = True
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.temp_dir = Path(self.temp_dir)
        if self.log_buffer_capacity < 1:
            raise ValueError("log_buffer_capacity must be at least 1")
        if self.backend_retries < 0:
            raise ValueError("backend_retries cannot be negative")


def load_settings() -> Settings:
    """Build ``Settings`` from the environment, defaulting anything unset."""
    defaults = Settings()
    temp_dir = _env("TEMP_DIR")
    return Settings(
        xcrun_path=_env("XCRUN") or defaults.xcrun_path,
        adb_path=_env("ADB") or defaults.adb_path,
        ffmpeg_path=_env("FFMPEG") or defaults.ffmpeg_path,
        idevicescreenshot_path=_env("IDEVICESCREENSHOT") or defaults.idevicescreenshot_path,
        scan_interval=_env_float("SCAN_INTERVAL", defaults.scan_interval),
        discovery_timeout=_env_float("DISCOVERY_TIMEOUT", defaults.discovery_timeout),
        include_simulators=_env_bool("INCLUDE_SIMULATORS", defaults.include_simulators),
        backend_retries=_env_int("BACKEND_RETRIES", defaults.backend_retries),
        backend_retry_delay=_env_float("BACKEND_RETRY_DELAY", defaults.backend_retry_delay),
        command_timeout=_env_float("COMMAND_TIMEOUT", defaults.command_timeout),
        install_timeout=_env_float("INSTALL_TIMEOUT", defaults.install_timeout),
        restart_pause=_env_float("RESTART_PAUSE", defaults.restart_pause),
        recorder_stop_timeout=_env_float("RECORDER_STOP_TIMEOUT", defaults.recorder_stop_timeout),
        device_flush_delay=_env_float("DEVICE_FLUSH_DELAY", defaults.device_flush_delay),
        android_bit_rate=_env_int("ANDROID_BIT_RATE", defaults.android_bit_rate),
        android_video_size=_env("ANDROID_VIDEO_SIZE") or defaults.android_video_size,
        log_buffer_capacity=_env_int("LOG_CAPACITY", defaults.log_buffer_capacity),
        log_queue_size=_env_int("LOG_QUEUE_SIZE", defaults.log_queue_size),
        transcode_timeout=_env_float("TRANSCODE_TIMEOUT", defaults.transcode_timeout),
        transcode_crf=_env_int("TRANSCODE_CRF", defaults.transcode_crf),
        temp_dir=Path(temp_dir) if temp_dir else defaults.temp_dir,
        api_port=_env_int("API_PORT", defaults.api_port),
        api_autoscan=_env_bool("API_AUTOSCAN", defaults.api_autoscan),
        log_level=(_env("LOG_LEVEL") or defaults.log_level).upper(),
    )


def configure_logging(level: str | int = "INFO") -> None:
    """Root logging setup used by the CLI and the API entry point."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
