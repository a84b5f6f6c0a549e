"""
Process Runner: external command execution for devicedeck.

Two modes:
    run()    spawn, wait for termination, return (exit_code, stdout, stderr)
    spawn()  start a long-running command and return a ProcessHandle that
             the caller owns until it stops it

Every invocation is logged with its command line and device context.

Usage:
    runner = ProcessRunner(default_timeout=120)

    out = await runner.run("adb", ["devices", "-l"])
    print(out.text)

    handle = await runner.spawn("adb", ["-s", serial, "logcat"], context=serial)
    async for line in handle.lines():
        ...
    await handle.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

from devicedeck.errors import ProcessExitError, ProcessLaunchError, ProcessTimeoutError

logger = logging.getLogger("devicedeck.process")


def _describe(argv: Sequence[str], context: str) -> str:
    line = " ".join(argv)
    return f"[{context}] {line}" if context else line


@dataclass(frozen=True)
class ProcessOutput:
    """Captured result of a completed process."""

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


# ===================================================================
# ProcessHandle
# ===================================================================

class ProcessHandle:
    """Owning handle to a live subprocess.

    Signalling or waiting on a process that has already exited is a no-op that
    returns immediately, so stop paths are safe to call more than once.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        argv: Sequence[str],
        context: str = "",
    ) -> None:
        self._process = process
        self.argv: List[str] = list(argv)
        self.context = context

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, argv={self.argv[:3]!r}, returncode={self.returncode})"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    def send_signal(self, sig: int) -> bool:
        """Deliver ``sig``; returns False if the process was already gone."""
        if not self.running:
            return False
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        logger.debug("Sent signal %d to pid %d (%s)", sig, self.pid, _describe(self.argv, self.context))
        return True

    def interrupt(self) -> bool:
        return self.send_signal(signal.SIGINT)

    def terminate(self) -> bool:
        return self.send_signal(signal.SIGTERM)

    def kill(self) -> bool:
        return self.send_signal(signal.SIGKILL)

    async def wait(self, timeout: Optional[float] = None) -> int:
        """Wait for exit and return the exit code."""
        if self._process.returncode is not None:
            return self._process.returncode
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ProcessTimeoutError(self.argv, timeout or 0.0) from None

    async def stop(self, sig: int = signal.SIGINT, timeout: float = 10.0) -> int:
        """Signal the process, wait up to ``timeout``, then kill if needed."""
        self.send_signal(sig)
        try:
            return await self.wait(timeout)
        except ProcessTimeoutError:
            logger.warning(
                "pid %d ignored signal %d for %.1fs, killing (%s)",
                self.pid, sig, timeout, _describe(self.argv, self.context),
            )
            self.kill()
            return await self._process.wait()

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines until EOF. Single use; the stream is not restartable."""
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


# ===================================================================
# ProcessRunner
# ===================================================================

class ProcessRunner:
    """Launches external commands on the running event loop."""

    def __init__(self, default_timeout: Optional[float] = 120.0) -> None:
        self.default_timeout = default_timeout

    async def _launch(
        self,
        argv: List[str],
        stdin: int | None,
        stdout: int | None,
        stderr: int | None,
    ) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                start_new_session=os.name == "posix",
            )
        except FileNotFoundError as exc:
            raise ProcessLaunchError(argv[0], "executable not found") from exc
        except PermissionError as exc:
            raise ProcessLaunchError(argv[0], "permission denied") from exc
        except OSError as exc:
            raise ProcessLaunchError(argv[0], str(exc)) from exc

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        stdin: Optional[bytes] = None,
        timeout: Optional[float] = None,
        check: bool = True,
        context: str = "",
    ) -> ProcessOutput:
        """Run to completion and capture output.

        Raises:
            ProcessLaunchError:  the executable could not be started.
            ProcessTimeoutError: the process outlived ``timeout`` (it is killed).
            ProcessExitError:    non-zero exit and ``check`` is true.
        """
        argv = [executable, *map(str, args)]
        if timeout is None:
            timeout = self.default_timeout
        logger.debug("run: %s", _describe(argv, context))

        proc = await self._launch(
            argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input=stdin), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("Timed out after %ss: %s", timeout, _describe(argv, context))
            raise ProcessTimeoutError(argv, timeout or 0.0) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        output = ProcessOutput(exit_code=proc.returncode or 0, stdout=stdout or b"", stderr=stderr or b"")
        if output.exit_code != 0:
            logger.debug(
                "exit %d: %s stderr=%s", output.exit_code, _describe(argv, context),
                output.error_text.strip()[:300],
            )
            if check:
                raise ProcessExitError(argv, output.exit_code, output.error_text)
        return output

    async def spawn(
        self,
        executable: str,
        args: Sequence[str] = (),
        context: str = "",
        capture_stdout: bool = True,
    ) -> ProcessHandle:
        """Start a long-running command and hand ownership to the caller."""
        argv = [executable, *map(str, args)]
        proc = await self._launch(
            argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.info("spawned pid %d: %s", proc.pid, _describe(argv, context))
        return ProcessHandle(proc, argv, context=context)
