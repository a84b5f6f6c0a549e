"""
Error taxonomy for devicedeck.

Every error carries a human-readable message suitable for display. External
tool failures never crash the host process; they surface as one of these
types and the caller decides what to show.
"""

from __future__ import annotations

from typing import Optional, Sequence


def _command_line(argv: Sequence[str]) -> str:
    return " ".join(str(a) for a in argv)


def _clip(text: str, limit: int = 500) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


class DeviceDeckError(Exception):
    """Base class for all devicedeck errors."""

    @property
    def message(self) -> str:
        return str(self)


# ===================================================================
# PROCESS ERRORS
# ===================================================================

class ProcessError(DeviceDeckError):
    """Base for failures of an external process."""


class ProcessLaunchError(ProcessError):
    """The executable is missing or could not be spawned."""

    def __init__(self, executable: str, reason: str = "") -> None:
        self.executable = executable
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Could not launch '{executable}'{detail}")


class ProcessExitError(ProcessError):
    """A blocking run finished with a non-zero exit code."""

    def __init__(self, argv: Sequence[str], exit_code: int, stderr_text: str = "") -> None:
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr_text = stderr_text
        detail = _clip(stderr_text) or "no error output"
        super().__init__(
            f"'{_command_line(argv)}' exited with code {exit_code}: {detail}"
        )


class ProcessTimeoutError(ProcessError):
    """A blocking call or wait exceeded its timeout."""

    def __init__(self, argv: Sequence[str], timeout: float) -> None:
        self.argv = list(argv)
        self.timeout = timeout
        super().__init__(f"'{_command_line(argv)}' timed out after {timeout:g}s")


# ===================================================================
# FACADE / SESSION ERRORS
# ===================================================================

class CommandError(DeviceDeckError):
    """Uniform failure of a Device Command Facade operation."""

    def __init__(
        self,
        message: str,
        stderr: str = "",
        operation: str = "",
        device_id: Optional[str] = None,
    ) -> None:
        self.stderr = stderr
        self.operation = operation
        self.device_id = device_id
        super().__init__(message)


class AlreadyRecordingError(DeviceDeckError):
    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Recording already in progress for {device_id}")


class NoActiveRecordingError(DeviceDeckError):
    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"No active recording for {device_id}")


class BackendNotReadyError(DeviceDeckError):
    """The backend's background service stayed unavailable after retries."""

    def __init__(self, backend: str, attempts: int = 0) -> None:
        self.backend = backend
        self.attempts = attempts
        super().__init__(
            f"{backend} backend is not ready after {attempts} attempt(s)"
        )


class ParseError(DeviceDeckError):
    """Backend output did not have the expected shape."""

    def __init__(self, text: str, reason: str) -> None:
        self.text = text
        self.reason = reason
        super().__init__(f"Could not parse {_clip(text, 120)!r}: {reason}")


class UnsupportedFormatError(DeviceDeckError):
    def __init__(self, fmt: str, supported: Sequence[str] = ()) -> None:
        self.fmt = fmt
        self.supported = list(supported)
        hint = f" (supported: {', '.join(supported)})" if supported else ""
        super().__init__(f"Unsupported format '{fmt}'{hint}")


class UnknownDeviceError(DeviceDeckError):
    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"Device not found: {device_id}")
