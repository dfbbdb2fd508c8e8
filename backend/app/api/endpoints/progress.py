"""Server-sent progress events for running downloads."""
import asyncio
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse

from app.api.deps import get_progress_registry
from app.core.config import settings
from app.core.logging import get_logger
from app.services.progress import ProgressRegistry

logger = get_logger(__name__)

router = APIRouter()


async def progress_events(
    video_id: str,
    registry: ProgressRegistry,
    is_disconnected: Callable[[], Awaitable[bool]],
    interval: float | None = None,
) -> AsyncIterator[dict[str, str]]:
    """Yield the current percent for *video_id* every *interval* seconds.

    Stops when the client disconnects (or the generator is closed by the
    SSE response); the timer is torn down exactly once either way.
    """
    interval = interval or settings.PROGRESS_INTERVAL_SECONDS
    logger.debug(f"Progress stream opened for {video_id}")
    try:
        while not await is_disconnected():
            yield {"event": "progress", "data": str(registry.percent_for(video_id))}
            await asyncio.sleep(interval)
    finally:
        logger.debug(f"Progress stream closed for {video_id}")


@router.get(
    "/progress/{video_id}",
    summary="Download progress",
    description="Server-sent events with the integer progress (0-100) of a video's download",
)
async def download_progress(
    video_id: str,
    request: Request,
    registry: ProgressRegistry = Depends(get_progress_registry),
) -> EventSourceResponse:
    return EventSourceResponse(
        progress_events(video_id, registry, request.is_disconnected)
    )
