"""Muxing of separately fetched video and audio with ffmpeg."""
from pathlib import Path

from app.core.config import settings
from app.core.logging import get_logger
from app.services.errors import AssembleError, ToolError
from app.services.process import ToolRunner, run_tool

logger = get_logger(__name__)


class Assembler:
    """Combines a video-only and an audio-only file into one MP4."""

    def __init__(self, runner: ToolRunner = run_tool) -> None:
        self._runner = runner

    @staticmethod
    def build_command(video_path: Path, audio_path: Path, output_path: Path) -> list[str]:
        """Build the ffmpeg command line.

        Video is copied untouched, audio becomes AAC, and the moov atom is
        moved to the front so players can start before the download ends.
        """
        return [
            settings.FFMPEG_BINARY,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(video_path),
            "-i", str(audio_path),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", settings.FFMPEG_AUDIO_BITRATE,
            "-preset", settings.FFMPEG_PRESET,
            "-movflags", "+faststart",
            "-bufsize", settings.FFMPEG_BUFSIZE,
            "-maxrate", settings.FFMPEG_MAXRATE,
            "-threads", str(settings.FFMPEG_THREADS),
            "-f", "mp4",
            str(output_path),
        ]

    async def assemble(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        """Mux *video_path* and *audio_path* into *output_path*.

        Raises:
            AssembleError: If ffmpeg fails, times out, or writes nothing
        """
        for source in (video_path, audio_path):
            if not source.is_file() or source.stat().st_size == 0:
                raise AssembleError(f"Input file is missing or empty: {source.name}")

        logger.info(f"Merging {video_path.name} + {audio_path.name} -> {output_path.name}")

        try:
            result = await self._runner(
                self.build_command(video_path, audio_path, output_path),
                timeout=settings.ASSEMBLE_TIMEOUT_SECONDS,
            )
        except ToolError as e:
            raise AssembleError(str(e))

        if not result.ok:
            stderr_text = result.stderr_tail()
            logger.error(f"ffmpeg failed ({result.returncode}): {stderr_text}")
            raise AssembleError(stderr_text or f"ffmpeg exited with status {result.returncode}")

        if not output_path.is_file():
            raise AssembleError("Merged file not found")

        logger.info(f"Merged file ready: {output_path.stat().st_size:,} bytes")
        return output_path
