"""In-memory append-only log of completed downloads."""
import threading
import time
import uuid
from collections import deque

from app.core.config import settings
from app.core.logging import get_logger
from app.models.history import HistoryRecord
from app.models.video import VideoMetadata

logger = get_logger(__name__)


class HistoryStore:
    """Keeps the most recent downloads, oldest dropped first."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._records: deque[HistoryRecord] = deque(
            maxlen=max_entries or settings.HISTORY_MAX_ENTRIES
        )
        self._lock = threading.Lock()

    def record(
        self,
        metadata: VideoMetadata,
        url: str,
        format_id: str | None = None,
        timestamp: float | None = None,
    ) -> HistoryRecord:
        """Append a record for a finished download and return it."""
        entry = HistoryRecord(
            id=uuid.uuid4().hex,
            video_id=metadata.id,
            title=metadata.title,
            author=metadata.uploader,
            url=url,
            format_id=format_id,
            timestamp=time.time() if timestamp is None else timestamp,
        )
        with self._lock:
            self._records.append(entry)
        logger.debug(f"History record {entry.id} for video {metadata.id}")
        return entry

    def recent(self, limit: int | None = None) -> list[HistoryRecord]:
        """Return up to *limit* records, newest first."""
        limit = limit or settings.HISTORY_LIMIT
        with self._lock:
            records = list(self._records)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]
