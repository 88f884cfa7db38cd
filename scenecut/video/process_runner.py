"""Async FFmpeg/ffprobe process runner: streamed stderr, timeout kill, cancellation kill."""

import asyncio
import logging
import shlex
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Sequence

_log = logging.getLogger(__name__)

_DEFAULT_STDERR_TAIL_LINES = 40
_STDERR_KEEP_LINES = 200
TIMEOUT_RETURNCODE = -9


class ProcessLaunchError(OSError):
    """Raised when the external executable cannot be started (missing binary, permissions)."""


def _cmd_to_repro(cmd: Sequence[str]) -> str:
    """Render a shell-safe repro command line for copy/paste."""
    return " ".join(shlex.quote(str(c)) for c in cmd)


def _stderr_tail(stderr: str, *, max_lines: int = _DEFAULT_STDERR_TAIL_LINES) -> str:
    if not stderr:
        return ""
    lines = stderr.strip().splitlines()
    tail = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n".join(tail).strip()


@dataclass(frozen=True)
class ProcessResult:
    cmd: list[str]
    returncode: int
    stderr: str
    stdout: bytes = b""
    timed_out: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def repro(self) -> str:
        return _cmd_to_repro(self.cmd)

    def stderr_tail(self, *, max_lines: int = _DEFAULT_STDERR_TAIL_LINES) -> str:
        return _stderr_tail(self.stderr, max_lines=max_lines)


async def _kill_and_reap(process: asyncio.subprocess.Process) -> None:
    """Force-kill a child and wait for it so no zombie is left behind."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


class ProcessRunner:
    """
    Launches the transcoder with argument lists on the running event loop.

    stderr is drained line by line while the process runs, so callers parsing diagnostics
    (scene-change pts_time, progress time=) see each line as soon as FFmpeg writes it.
    """

    def __init__(self, ffmpeg_path: str = "ffmpeg", ffprobe_path: str = "ffprobe") -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path

    async def ffmpeg(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
    ) -> ProcessResult:
        return await self.run([self.ffmpeg_path, *args], timeout=timeout, on_stderr_line=on_stderr_line)

    async def ffprobe(self, args: Sequence[str], *, timeout: float | None = 30.0) -> ProcessResult:
        return await self.run([self.ffprobe_path, *args], timeout=timeout, capture_stdout=True)

    async def run(
        self,
        cmd: Sequence[str],
        *,
        timeout: float | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        capture_stdout: bool = False,
    ) -> ProcessResult:
        """
        Run cmd to completion and return its ProcessResult.

        - timeout: seconds before the process is killed; the result then has timed_out=True.
        - on_stderr_line: called with each decoded stderr line (without trailing newline).
        - capture_stdout: keep stdout bytes (ffprobe JSON); otherwise stdout is discarded.

        Raises ProcessLaunchError if the executable cannot be started. If the awaiting task is
        cancelled, the child is killed and reaped before CancelledError propagates.
        """
        cmd = [str(c) for c in cmd]
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessLaunchError(e.errno, f"Failed to start {cmd[0]}: {e.strerror or e}") from e

        stderr_lines: deque[str] = deque(maxlen=_STDERR_KEEP_LINES)
        stdout_chunks: list[bytes] = []

        async def drain_stderr() -> None:
            assert process.stderr is not None
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                stderr_lines.append(line)
                if on_stderr_line is not None:
                    on_stderr_line(line)

        async def drain_stdout() -> None:
            if process.stdout is None:
                return
            stdout_chunks.append(await process.stdout.read())

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(drain_stderr(), drain_stdout(), process.wait()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            _log.warning("Process timed out after %.1fs, killing: %s", timeout, _cmd_to_repro(cmd))
            await _kill_and_reap(process)
        except asyncio.CancelledError:
            _log.debug("Process cancelled, killing: %s", _cmd_to_repro(cmd))
            await _kill_and_reap(process)
            raise
        except BaseException:
            await _kill_and_reap(process)
            raise

        returncode = process.returncode if process.returncode is not None else TIMEOUT_RETURNCODE
        if timed_out and returncode == 0:
            returncode = TIMEOUT_RETURNCODE
        return ProcessResult(
            cmd=cmd,
            returncode=int(returncode),
            stderr="\n".join(stderr_lines),
            stdout=b"".join(stdout_chunks),
            timed_out=timed_out,
            elapsed=time.monotonic() - started,
        )
