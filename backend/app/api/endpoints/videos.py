"""Video metadata and download endpoints."""
import re
from typing import Callable
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from app.api.deps import get_pipeline
from app.core.logging import get_logger
from app.models.video import (
    DownloadRequest,
    ErrorResponse,
    TitleResponse,
    UrlRequest,
    VideoInfoResponse,
)
from app.services.download_jobs import DownloadJob
from app.services.pipeline import DownloadPipeline

logger = get_logger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"description": "Invalid URL or metadata lookup failed", "model": ErrorResponse},
    500: {"description": "Merge or delivery failed", "model": ErrorResponse},
    502: {"description": "Stream retrieval failed", "model": ErrorResponse},
}


class JobStreamingResponse(StreamingResponse):
    """StreamingResponse that runs *on_close* however the response ends.

    Starlette skips background tasks when the client disconnects, so the
    job's files are released from here instead.
    """

    def __init__(self, *args, on_close: Callable[[], None], **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._on_close()


def _sanitize_filename(filename: str) -> str:
    """Sanitize a filename for safe use in Content-Disposition header.

    Args:
        filename: Raw filename

    Returns:
        Sanitized filename safe for headers (ASCII only)
    """
    # Only keep ASCII alphanumeric, spaces, hyphens, dots
    filename = re.sub(r'[^a-zA-Z0-9\s\-\.]', '', filename, flags=re.ASCII)
    # Replace whitespace with underscores
    filename = re.sub(r'\s+', '_', filename)
    # Limit length
    if len(filename) > 200:
        filename = filename[:200]
    return filename or "download"


def _build_content_disposition(title: str) -> str:
    """Build Content-Disposition header with proper encoding for non-ASCII titles.

    Uses RFC 5987 encoding to support Unicode filenames while maintaining
    compatibility with older browsers.

    Args:
        title: Video title (may contain Unicode characters)

    Returns:
        Properly encoded Content-Disposition header value
    """
    ascii_filename = f"{_sanitize_filename(title)}.mp4"
    encoded_filename = quote(f"{title}.mp4", safe='')
    return f"attachment; filename=\"{ascii_filename}\"; filename*=UTF-8''{encoded_filename}"


def _delivery_headers(job: DownloadJob) -> dict[str, str]:
    title = job.metadata.title if job.metadata else "download"
    return {
        "Content-Disposition": _build_content_disposition(title),
        "Content-Length": str(job.output_size),
        "Accept-Ranges": "bytes",
        "Cache-Control": "public, max-age=31536000",
        "X-Content-Type-Options": "nosniff",
    }


@router.get(
    "/video-info",
    response_model=VideoInfoResponse,
    status_code=status.HTTP_200_OK,
    summary="Fetch video info",
    description="Retrieve metadata and downloadable qualities for a video URL",
    responses={400: ERROR_RESPONSES[400]},
)
async def video_info(
    url: str = Query(..., description="Video URL", min_length=10, max_length=2048),
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> VideoInfoResponse:
    """Resolve a URL into its title, author and one format per quality."""
    resolved = await pipeline.resolver.resolve(url)
    return VideoInfoResponse.from_resolved(resolved)


@router.post(
    "/get-title",
    response_model=TitleResponse,
    summary="Fetch video title",
    description="Return the channel, title and id of a video",
    responses={400: ERROR_RESPONSES[400]},
)
async def get_title(
    request: UrlRequest,
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> TitleResponse:
    resolved = await pipeline.resolver.resolve(request.url)
    meta = resolved.metadata
    return TitleResponse(channel=meta.uploader, title=meta.title, video_id=meta.id)


async def _download(
    request: Request,
    url: str,
    format_id: str | None,
    pipeline: DownloadPipeline,
) -> StreamingResponse:
    """Prepare the file, then stream it with its final size known.

    Errors raised before this returns become JSON error responses; once the
    response starts, a failure can only abort the stream.
    """
    job = pipeline.create_job(url, format_id)
    await pipeline.prepare(job, is_disconnected=request.is_disconnected)

    logger.info(f"Streaming download: {job.metadata.title if job.metadata else job.token}")
    return JobStreamingResponse(
        pipeline.stream(job),
        media_type="video/mp4",
        headers=_delivery_headers(job),
        on_close=lambda: pipeline.finish(job),
    )


@router.get(
    "/download",
    summary="Download video (GET)",
    description="Download a video as MP4 (GET method for browser navigation)",
    responses={200: {"description": "Video file stream"}, **ERROR_RESPONSES},
)
async def download_video_get(
    request: Request,
    url: str = Query(..., description="Video URL", min_length=10, max_length=2048),
    format_id: str | None = Query(
        None,
        alias="formatId",
        description="Format ID from /video-info; omitted means best combined stream",
        max_length=500,
    ),
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    return await _download(request, url, format_id or None, pipeline)


@router.post(
    "/download",
    summary="Download video (POST)",
    description="Download a video as MP4 (POST method)",
    responses={200: {"description": "Video file stream"}, **ERROR_RESPONSES},
)
async def download_video_post(
    request: Request,
    body: DownloadRequest,
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> StreamingResponse:
    return await _download(request, body.url, body.format_id, pipeline)
