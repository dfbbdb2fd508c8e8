"""Asynchronous invocation of external command-line tools.

Every pipeline stage talks to yt-dlp or ffmpeg through :func:`run_tool` (or
an injected replacement with the same signature), so the stages never deal
with process handles directly.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from app.core.logging import get_logger
from app.services.errors import ToolNotFoundError, ToolOutputError, ToolTimeoutError

logger = get_logger(__name__)

STDERR_LIMIT = 64 * 1024  # keep last ~64KB for error logs
STDOUT_READ_SIZE = 64 * 1024
LINE_LIMIT = 1024 * 1024
TERMINATE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class ToolResult:
    """Outcome of a finished external process."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, limit: int = 500) -> str:
        """Last *limit* characters of stderr, stripped."""
        return self.stderr.strip()[-limit:]


LineConsumer = Callable[[str], None]


class ToolRunner(Protocol):
    """Callable signature shared by :func:`run_tool` and test fakes."""

    def __call__(
        self,
        cmd: list[str],
        *,
        timeout: float | None = None,
        on_line: LineConsumer | None = None,
    ) -> Awaitable[ToolResult]: ...


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Stop *process*: SIGTERM first, SIGKILL if it does not exit in time."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()


async def run_tool(
    cmd: list[str],
    *,
    timeout: float | None = None,
    on_line: LineConsumer | None = None,
) -> ToolResult:
    """Run *cmd* to completion and collect its output.

    Args:
        cmd: Executable followed by its arguments
        timeout: Seconds before the process is killed (None waits forever)
        on_line: Receives each non-empty stdout line as it is produced.
            Without it stdout is read in chunks, which copes with tools that
            print a single multi-megabyte JSON line.

    Returns:
        ToolResult with the exit status and decoded output

    Raises:
        ToolNotFoundError: If the executable does not exist
        ToolTimeoutError: If *timeout* elapsed (the process has been killed)
        ToolOutputError: If a stdout line exceeds LINE_LIMIT (process killed)
    """
    binary = cmd[0]
    logger.debug(f"Running {binary} with {len(cmd) - 1} arguments")

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,  # Prevent signal propagation
            limit=LINE_LIMIT,
        )
    except FileNotFoundError:
        raise ToolNotFoundError(binary)

    stdout_parts: list[str] = []
    stderr_buffer = bytearray()

    async def _read_stdout() -> None:
        if process.stdout is None:
            return
        if on_line is None:
            while True:
                data = await process.stdout.read(STDOUT_READ_SIZE)
                if not data:
                    break
                stdout_parts.append(data.decode(errors="replace"))
            return
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError as e:
                # Line longer than LINE_LIMIT
                raise ToolOutputError(binary, str(e))
            if not raw:
                break
            line = raw.decode(errors="replace")
            stdout_parts.append(line)
            stripped = line.strip()
            if stripped:
                on_line(stripped)

    async def _drain_stderr() -> None:
        if process.stderr is None:
            return
        while True:
            data = await process.stderr.read(4096)
            if not data:
                break
            stderr_buffer.extend(data)
            if len(stderr_buffer) > STDERR_LIMIT:
                del stderr_buffer[: len(stderr_buffer) - STDERR_LIMIT]

    try:
        await asyncio.wait_for(
            asyncio.gather(_read_stdout(), _drain_stderr(), process.wait()),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"{binary} exceeded {timeout}s, terminating")
        await _terminate(process)
        raise ToolTimeoutError(binary, timeout or 0)
    except BaseException:
        # Cancellation (client went away) or a failing line consumer
        await _terminate(process)
        raise

    returncode = process.returncode if process.returncode is not None else -1
    return ToolResult(
        returncode=returncode,
        stdout="".join(stdout_parts),
        stderr=stderr_buffer.decode(errors="replace"),
    )
