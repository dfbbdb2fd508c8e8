"""Metadata resolution through ``yt-dlp --dump-single-json``."""
import json
import re
import threading
from typing import Any

from cachetools import TTLCache

from app.core.config import settings
from app.core.logging import get_logger
from app.models.video import ResolvedVideo, StreamVariant, VideoMetadata
from app.services.errors import ResolveError, ToolError, ToolNotFoundError, ToolTimeoutError
from app.services.process import ToolRunner, run_tool
from app.services.urls import normalize_url, sanitize_url_for_logging

logger = get_logger(__name__)

CODEC_NONE = "none"

# Favour MP4 video + M4A audio, fall back to any best combined stream
PREFERRED_FORMAT = "bv*[ext=mp4]+ba[ext=m4a]/b[ext=mp4] / bv*+ba/b"

# Legacy 360p progressive stream (video+audio in one MP4)
LEGACY_COMBINED_FORMAT_ID = "18"


_QUALITY_RE = re.compile(r"(\d+)")


def common_ytdlp_args() -> list[str]:
    """yt-dlp flags shared by metadata and download invocations."""
    args: list[str] = [
        "--no-warnings",
        "--no-playlist",
        "--socket-timeout", str(settings.YTDLP_SOCKET_TIMEOUT),
    ]
    if settings.YTDLP_NO_CHECK_CERTIFICATES:
        args.append("--no-check-certificates")
    if settings.YTDLP_USER_AGENT:
        args.extend(["--user-agent", settings.YTDLP_USER_AGENT])
    if settings.YTDLP_COOKIES_FILE:
        args.extend(["--cookies", settings.YTDLP_COOKIES_FILE])
    if settings.YTDLP_PROXY:
        args.extend(["--proxy", settings.YTDLP_PROXY])
    return args


def quality_rank(label: str) -> int:
    """Numeric part of a quality label ('720p' -> 720), 0 when absent."""
    match = _QUALITY_RE.search(label)
    return int(match.group(1)) if match else 0


def _is_candidate(raw_format: dict[str, Any]) -> bool:
    if raw_format.get("ext") == "mp4" and raw_format.get("height") and raw_format.get("filesize_approx"):
        return True
    return (
        str(raw_format.get("format_id")) == LEGACY_COMBINED_FORMAT_ID
        and bool(raw_format.get("filesize"))
    )


def _has_audio(raw_format: dict[str, Any]) -> bool:
    return raw_format.get("acodec", CODEC_NONE) not in (CODEC_NONE, None)


def _has_video(raw_format: dict[str, Any]) -> bool:
    return raw_format.get("vcodec", CODEC_NONE) not in (CODEC_NONE, None)


def _quality_label(raw_format: dict[str, Any]) -> str:
    if height := raw_format.get("height"):
        return f"{height}p"
    return raw_format.get("format_note") or "unknown"


def select_variants(raw_formats: list[dict[str, Any]]) -> list[StreamVariant]:
    """Filter, sort and deduplicate raw yt-dlp formats.

    Keeps MP4 entries that report a height and an approximate size, plus the
    legacy combined format when it reports an exact size. The result holds
    one variant per quality label (the first one seen wins) ordered from the
    highest quality down.
    """
    variants: list[StreamVariant] = []
    for raw_fmt in raw_formats:
        if not isinstance(raw_fmt, dict) or not _is_candidate(raw_fmt):
            continue
        size = int(raw_fmt.get("filesize") or raw_fmt.get("filesize_approx") or 0)
        variants.append(
            StreamVariant(
                quality=_quality_label(raw_fmt),
                format_id=str(raw_fmt.get("format_id")),
                ext=raw_fmt.get("ext") or "mp4",
                filesize_bytes=size,
            )
        )

    # Stable sort keeps source order among equal labels
    variants.sort(key=lambda v: quality_rank(v.quality), reverse=True)

    unique: list[StreamVariant] = []
    seen_labels: set[str] = set()
    for variant in variants:
        if variant.quality in seen_labels:
            continue
        seen_labels.add(variant.quality)
        unique.append(variant)
    return unique


def parse_metadata(info: dict[str, Any]) -> ResolvedVideo:
    """Build a :class:`ResolvedVideo` from a yt-dlp info dict."""
    duration = info.get("duration")
    raw_formats = info.get("formats") or []

    metadata = VideoMetadata(
        id=str(info.get("id") or "unknown"),
        title=info.get("title") or "Unknown Title",
        uploader=info.get("uploader") or info.get("channel") or "Unknown",
        duration_seconds=int(duration) if isinstance(duration, (int, float)) else None,
        thumbnail_url=info.get("thumbnail"),
    )
    muxed = frozenset(
        str(f["format_id"])
        for f in raw_formats
        if isinstance(f, dict) and f.get("format_id") and _has_audio(f) and _has_video(f)
    )
    return ResolvedVideo(
        metadata=metadata,
        variants=select_variants(raw_formats),
        muxed_format_ids=muxed,
    )


class ResolverClient:
    """Fetches video metadata by running yt-dlp in no-download mode."""

    def __init__(self, runner: ToolRunner = run_tool) -> None:
        self._runner = runner
        self._cache: TTLCache | None = None
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cache helpers (backed by cachetools.TTLCache)
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_enabled() -> bool:
        return (
            settings.METADATA_CACHE_TTL_SECONDS > 0
            and settings.METADATA_CACHE_MAXSIZE > 0
        )

    def _get_cache(self) -> TTLCache:
        """Lazy-initialise and return the TTL cache."""
        if self._cache is None:
            self._cache = TTLCache(
                maxsize=max(1, settings.METADATA_CACHE_MAXSIZE),
                ttl=max(1, settings.METADATA_CACHE_TTL_SECONDS),
            )
        return self._cache

    def get_cached(self, url: str) -> ResolvedVideo | None:
        """Return cached metadata for *url*, or None."""
        if not self._cache_enabled():
            return None
        with self._cache_lock:
            return self._get_cache().get(url)

    def _cache_set(self, url: str, resolved: ResolvedVideo) -> None:
        if not self._cache_enabled():
            return
        with self._cache_lock:
            self._get_cache()[url] = resolved

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def build_command(url: str) -> list[str]:
        """Build the metadata-only yt-dlp command line."""
        return [
            settings.YTDLP_BINARY,
            "--dump-single-json",
            "--skip-download",
            "-f", PREFERRED_FORMAT,
            *common_ytdlp_args(),
            url,
        ]

    async def resolve(self, url: str, use_cache: bool = True) -> ResolvedVideo:
        """Resolve *url* into metadata and its downloadable variants.

        Args:
            url: Video URL
            use_cache: Serve a recent result for the same URL when available

        Returns:
            ResolvedVideo with metadata, variants and muxed format ids

        Raises:
            InvalidUrlError: If URL is invalid or blocked
            ResolveError: If yt-dlp fails or prints something unusable
        """
        url = normalize_url(url)

        if use_cache:
            cached = self.get_cached(url)
            if cached is not None:
                return cached

        safe_url = sanitize_url_for_logging(url)
        logger.info(f"Resolving metadata for: {safe_url}")

        try:
            result = await self._runner(
                self.build_command(url),
                timeout=settings.RESOLVE_TIMEOUT_SECONDS,
            )
        except ToolTimeoutError as e:
            raise ResolveError(str(e), reason="timeout")
        except ToolNotFoundError as e:
            raise ResolveError(str(e), reason="tool_missing")
        except ToolError as e:
            raise ResolveError(str(e), reason="process_failed")

        if not result.ok:
            stderr_text = result.stderr_tail()
            logger.error(
                f"Metadata lookup failed ({result.returncode}) for {safe_url}: {stderr_text}"
            )
            raise ResolveError(
                stderr_text or f"yt-dlp exited with status {result.returncode}",
                reason="process_failed",
            )

        output = result.stdout.strip()
        if not output:
            raise ResolveError("yt-dlp produced no metadata output", reason="no_output")

        try:
            info = json.loads(output)
        except json.JSONDecodeError as e:
            logger.error(f"Unparsable metadata for {safe_url}: {e}")
            raise ResolveError(f"Metadata output is not valid JSON: {e}", reason="unparsable")

        if not isinstance(info, dict):
            raise ResolveError("Metadata output is not a JSON object", reason="unparsable")

        resolved = parse_metadata(info)
        self._cache_set(url, resolved)

        logger.info(
            f"Resolved '{resolved.metadata.title}' with {len(resolved.variants)} variants "
            f"for: {safe_url}"
        )
        return resolved
