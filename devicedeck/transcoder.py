"""
Transcoder: normalises raw recordings with ffmpeg.

The raw artifact is scaled down to the device kind's maximum width, encoded
as H.264 + AAC with the moov atom moved to the front, and written next to
the input as ``<stem>.optimized.mp4``. Encoding is best effort: any failure
hands back the raw artifact untouched.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from devicedeck.config import Settings
from devicedeck.errors import ProcessError
from devicedeck.models import DeviceKind
from devicedeck.process_runner import ProcessRunner

logger = logging.getLogger("devicedeck.transcoder")

OPTIMIZED_SUFFIX = ".optimized.mp4"


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def _human_size(size_bytes: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def optimized_path(input_path: Path) -> Path:
    return input_path.with_name(input_path.stem + OPTIMIZED_SUFFIX)


class Transcoder:
    def __init__(self, runner: ProcessRunner, settings: Settings) -> None:
        self.runner = runner
        self.settings = settings

    def max_width(self, kind: DeviceKind) -> int:
        if kind is DeviceKind.IOS:
            return self.settings.ios_max_width
        return self.settings.android_max_width

    def build_args(self, input_path: Path, output_path: Path, kind: DeviceKind) -> List[str]:
        width = self.max_width(kind)
        # Never upscale; -2 keeps the height even for libx264.
        scale = f"scale='min({width},iw)':-2"
        return [
            "-y", "-i", str(input_path),
            "-vf", scale,
            "-c:v", "libx264",
            "-preset", self.settings.transcode_preset,
            "-crf", str(self.settings.transcode_crf),
            "-c:a", "aac", "-b:a", self.settings.transcode_audio_bitrate,
            "-movflags", "+faststart",
            str(output_path),
        ]

    async def normalize(self, input_path: Path, kind: DeviceKind) -> Path:
        """Encode ``input_path``; return the new path, or the input on failure."""
        input_path = Path(input_path)
        output_path = optimized_path(input_path)
        try:
            await self.runner.run(
                self.settings.ffmpeg_path,
                self.build_args(input_path, output_path, kind),
                timeout=self.settings.transcode_timeout,
                context=kind.value,
            )
        except ProcessError as exc:
            logger.warning("Transcode failed, keeping raw recording %s: %s", input_path, exc)
            output_path.unlink(missing_ok=True)
            return input_path

        if _file_size(output_path) == 0:
            logger.warning("Transcoder produced no output for %s, keeping raw recording", input_path)
            output_path.unlink(missing_ok=True)
            return input_path

        orig_size = _file_size(input_path)
        new_size = _file_size(output_path)
        savings = ((orig_size - new_size) / orig_size * 100) if orig_size > 0 else 0
        logger.info(
            "Transcoded %s: %s -> %s (%.1f%% reduction)",
            output_path.name, _human_size(orig_size), _human_size(new_size), savings,
        )
        input_path.unlink(missing_ok=True)
        return output_path
