"""Async ffmpeg subprocess runner with progress parsing and cancellation."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50

# Called with the encoder's output position in seconds
TimeCallback = Callable[[float], None]


@dataclass
class FFmpegResult:
    """Outcome of one ffmpeg invocation."""

    return_code: int
    stderr: str
    cancelled: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.return_code == 0 and not self.cancelled and not self.timed_out

    def error_summary(self, limit: int = 500) -> str:
        """Last part of stderr, for error messages."""
        text = self.stderr.strip()
        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return f"timed out: {text[-limit:]}"
        return text[-limit:] or f"ffmpeg exited with {self.return_code}"


def parse_out_time(value: str) -> Optional[float]:
    """Parse an ffmpeg "HH:MM:SS.micro" timestamp into seconds.

    Returns None for values ffmpeg emits before the first frame (e.g. "N/A").
    """
    parts = value.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = parts
        total = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except ValueError:
        return None
    return max(total, 0.0)


def parse_progress_line(line: str) -> Optional[float]:
    """Extract the output position from one "-progress" key=value line."""
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    if key == "out_time":
        return parse_out_time(value)
    if key in ("out_time_us", "out_time_ms"):
        # Both keys carry microseconds
        try:
            return max(int(value) / 1_000_000, 0.0)
        except ValueError:
            return None
    return None


def build_command(
    ffmpeg_path: str,
    args: Sequence[str],
    with_progress: bool = True,
) -> list[str]:
    """Prefix ffmpeg arguments with the options every invocation shares."""
    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-y"]
    if with_progress:
        cmd.extend(["-progress", "pipe:1", "-nostats"])
    cmd.extend(args)
    return cmd


async def _read_progress(
    stream: Optional[asyncio.StreamReader],
    on_time: Optional[TimeCallback],
) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        if on_time is None:
            continue
        position = parse_progress_line(line.decode("utf-8", errors="ignore"))
        if position is None:
            continue
        try:
            on_time(position)
        except Exception as e:
            logger.warning(f"Progress callback error: {e}")


async def _read_stderr(stream: Optional[asyncio.StreamReader], tail: deque) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            break
        tail.append(line.decode("utf-8", errors="ignore"))


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def run_ffmpeg(
    args: Sequence[str],
    ffmpeg_path: str = "ffmpeg",
    on_time: Optional[TimeCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> FFmpegResult:
    """Run ffmpeg and wait for it to finish.

    stdout carries "-progress" key=value lines and stderr is kept as a short
    tail, each drained by its own task so neither pipe can fill up. Setting
    cancel_event kills the process.

    Args:
        args: ffmpeg arguments after the shared prefix
        ffmpeg_path: ffmpeg executable
        on_time: Receives the output position in seconds; exceptions it
            raises are logged and ignored
        cancel_event: Kills the process when set
        timeout: Seconds before the process is killed

    Returns:
        FFmpegResult; a process that could not start has return_code -1
    """
    cmd = build_command(ffmpeg_path, args, with_progress=on_time is not None)
    logger.debug(f"Running FFmpeg: {' '.join(cmd)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"Failed to start FFmpeg: {e}")
        return FFmpegResult(return_code=-1, stderr=str(e))

    stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
    readers = [
        asyncio.create_task(_read_progress(process.stdout, on_time)),
        asyncio.create_task(_read_stderr(process.stderr, stderr_tail)),
    ]
    wait_task = asyncio.create_task(process.wait())
    cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event else None

    cancelled = False
    timed_out = False
    try:
        watched = {wait_task} if cancel_task is None else {wait_task, cancel_task}
        done, _ = await asyncio.wait(
            watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )

        if wait_task not in done:
            if cancel_task is not None and cancel_task in done:
                cancelled = True
                logger.info("Cancellation requested, killing FFmpeg")
            else:
                timed_out = True
                logger.error(f"FFmpeg did not finish within {timeout}s, killing")
            await _kill(process)

        await wait_task
        await asyncio.gather(*readers)
    finally:
        if cancel_task is not None and not cancel_task.done():
            cancel_task.cancel()
        if process.returncode is None:
            await _kill(process)
        for task in readers:
            if not task.done():
                task.cancel()

    return_code = process.returncode if process.returncode is not None else -1
    return FFmpegResult(
        return_code=return_code,
        stderr="".join(stderr_tail),
        cancelled=cancelled,
        timed_out=timed_out,
    )
