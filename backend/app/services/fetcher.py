"""Stream retrieval through yt-dlp into per-job temporary files."""
import re
from pathlib import Path
from typing import Callable

from app.core.config import settings
from app.core.logging import get_logger
from app.services.errors import FetchError, InvalidFormatError, ToolError
from app.services.process import ToolRunner, run_tool
from app.services.resolver import common_ytdlp_args
from app.services.urls import sanitize_url_for_logging

logger = get_logger(__name__)

BEST_COMBINED_SELECTOR = "best[ext=mp4]/best"
BEST_AUDIO_SELECTOR = "bestaudio[ext=m4a]/bestaudio"

# Regex for safe format-id values (prevents option injection)
FORMAT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9+\[\]<>=^:/\-_.*]+$")

# Regex for parsing yt-dlp progress output (used with --newline)
_PROGRESS_PCT_RE = re.compile(r"\[download\]\s+([\d.]+)%")

ProgressCallback = Callable[[float], None]


def validate_format_id(format_id: str) -> str:
    """Reject format ids that could be read as command-line options."""
    if format_id.startswith("-") or not FORMAT_ID_PATTERN.match(format_id):
        raise InvalidFormatError(f"Invalid format_id: {format_id[:50]}")
    return format_id


def parse_progress(line: str) -> float | None:
    """Extract the percentage from a yt-dlp ``[download]`` line."""
    match = _PROGRESS_PCT_RE.search(line)
    if not match:
        return None
    try:
        return min(float(match.group(1)), 100.0)
    except ValueError:
        return None


class Fetcher:
    """Downloads a single stream to a caller-chosen path."""

    def __init__(self, runner: ToolRunner = run_tool) -> None:
        self._runner = runner

    @staticmethod
    def build_command(url: str, selector: str, output_path: Path) -> list[str]:
        """Build a yt-dlp command that writes one stream to *output_path*."""
        return [
            settings.YTDLP_BINARY,
            "-f", selector,
            "-o", str(output_path),
            "--no-part",
            "--newline",       # one line per progress update
            "--progress",      # force progress even when not a TTY
            "--retries", str(settings.FETCH_RETRIES),
            "--limit-rate", settings.FETCH_LIMIT_RATE,
            "--concurrent-fragments", str(settings.FETCH_CONCURRENT_FRAGMENTS),
            "--buffer-size", settings.FETCH_BUFFER_SIZE,
            *common_ytdlp_args(),
            url,
        ]

    async def fetch(
        self,
        url: str,
        selector: str,
        output_path: Path,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Retrieve the stream chosen by *selector* into *output_path*.

        Args:
            url: Normalized video URL
            selector: Format id or yt-dlp selector expression
            output_path: Temporary file to create
            on_progress: Receives the stream's download percentage

        Returns:
            *output_path*, once it exists and is non-empty

        Raises:
            InvalidFormatError: If *selector* contains unsafe characters
            FetchError: If yt-dlp fails or leaves no usable file
        """
        validate_format_id(selector)
        safe_url = sanitize_url_for_logging(url)
        logger.info(f"Fetching {selector} from {safe_url} into {output_path.name}")

        def _on_line(line: str) -> None:
            if on_progress is None:
                return
            percent = parse_progress(line)
            if percent is not None:
                on_progress(percent)

        try:
            result = await self._runner(
                self.build_command(url, selector, output_path),
                timeout=settings.FETCH_TIMEOUT_SECONDS,
                on_line=_on_line,
            )
        except ToolError as e:
            raise FetchError(str(e))

        if not result.ok:
            stderr_text = result.stderr_tail()
            logger.error(
                f"Fetch of {selector} failed ({result.returncode}) for {safe_url}: {stderr_text}"
            )
            raise FetchError(stderr_text or f"yt-dlp exited with status {result.returncode}")

        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise FetchError(f"Download produced no output file for format {selector}")

        logger.info(
            f"Fetched {output_path.stat().st_size:,} bytes of {selector} for {safe_url}"
        )
        return output_path
