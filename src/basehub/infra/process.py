"""Bounded subprocess execution.

Every external tool call goes through run_command: it never blocks the
event loop, is always bounded by a timeout, and caps how much output it
will buffer. Exceeding either bound kills the process.
"""

import asyncio
import logging
import os
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from basehub.errors import ExternalToolError
from basehub.logging_schema import LogEvent
from basehub.metrics import COMMAND_DURATION

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL = 4000


@dataclass(frozen=True)
class CommandResult:
    """Completed process output."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    duration_s: float


class _OutputOverflow(Exception):
    pass


async def _drain(
    stream: asyncio.StreamReader,
    sink: bytearray,
    budget: list[int],
    limit: int,
) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        budget[0] += len(chunk)
        if budget[0] > limit:
            raise _OutputOverflow()
        sink.extend(chunk)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
    await process.wait()


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float,
    max_output_bytes: int,
    label: str = "command",
    check: bool = True,
) -> CommandResult:
    """Run *args* as a subprocess and return its output.

    Args:
        args: Program and arguments (no shell).
        cwd: Working directory.
        env: Extra environment variables layered over os.environ.
        timeout: Seconds before the process is killed.
        max_output_bytes: Combined stdout+stderr cap.
        label: Metric/log label for the command.
        check: Raise on non-zero exit.

    Raises:
        ExternalToolError: On spawn failure, timeout, overflow, or non-zero
            exit when check is set.
    """
    argv = [str(a) for a in args]
    merged_env = {**os.environ, **env} if env else None
    start = time.monotonic()

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ExternalToolError(f"Failed to run {argv[0]}: {exc}", command=argv) from exc

    stdout = bytearray()
    stderr = bytearray()
    budget = [0]

    try:
        async with asyncio.timeout(timeout):
            await asyncio.gather(
                _drain(process.stdout, stdout, budget, max_output_bytes),  # type: ignore[arg-type]
                _drain(process.stderr, stderr, budget, max_output_bytes),  # type: ignore[arg-type]
            )
            await process.wait()
    except TimeoutError as exc:
        await _kill(process)
        COMMAND_DURATION.labels(command=label).observe(time.monotonic() - start)
        logger.warning(
            "Command timed out",
            extra={"event": LogEvent.COMMAND_TIMEOUT, "command": label, "timeout_s": timeout},
        )
        raise ExternalToolError(
            f"{label} timed out after {timeout:.0f}s",
            command=argv,
            stderr=_tail(stderr),
        ) from exc
    except _OutputOverflow as exc:
        await _kill(process)
        raise ExternalToolError(
            f"{label} exceeded output limit of {max_output_bytes} bytes",
            command=argv,
            stderr=_tail(stderr),
        ) from exc

    duration = time.monotonic() - start
    COMMAND_DURATION.labels(command=label).observe(duration)

    result = CommandResult(
        args=argv,
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_s=duration,
    )

    if check and result.returncode != 0:
        logger.warning(
            "Command failed",
            extra={
                "event": LogEvent.COMMAND_FAILED,
                "command": label,
                "returncode": result.returncode,
            },
        )
        raise ExternalToolError(
            f"{label} exited with code {result.returncode}: {_tail(stderr) or 'no output'}",
            command=argv,
            returncode=result.returncode,
            stderr=_tail(stderr),
        )

    return result


def _tail(buffer: bytearray | bytes) -> str:
    text = bytes(buffer[-_STDERR_TAIL:]).decode("utf-8", errors="replace")
    return text.strip()
