"""Per-job progress handles and the registry the SSE endpoint reads from.

A :class:`ProgressHandle` belongs to one download job. The pipeline
registers it under the video id once metadata is known and unregisters it
when the job ends; the final value stays readable for a while afterwards so
a late progress poll still sees 100 instead of 0.
"""
import threading
from dataclasses import dataclass, field

from cachetools import TTLCache

from app.core.config import settings


@dataclass
class ProgressHandle:
    """Tracks the overall progress of a single download job."""

    key: str = ""
    # Phase hints: resolve | video | audio | merge | stream | done | failed
    phase: str = "pending"
    _percent: float = field(default=0.0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def percent(self) -> int:
        """Integer progress in the range 0-100."""
        return int(self._percent)

    def update(self, percent: float, phase: str | None = None) -> None:
        """Raise progress to *percent*; lower values are ignored."""
        clamped = max(0.0, min(float(percent), 100.0))
        with self._lock:
            if clamped > self._percent:
                self._percent = clamped
            if phase is not None:
                self.phase = phase


class ProgressRegistry:
    """Looks up live progress handles by key (the video id)."""

    def __init__(self, retention_seconds: int | None = None) -> None:
        self._active: dict[str, ProgressHandle] = {}
        self._finished: TTLCache = TTLCache(
            maxsize=1024,
            ttl=retention_seconds or settings.PROGRESS_RETENTION_SECONDS,
        )
        self._lock = threading.Lock()

    def register(self, key: str, handle: ProgressHandle) -> None:
        """Expose *handle* under *key*; a newer job for the same key wins."""
        handle.key = key
        with self._lock:
            self._active[key] = handle
            self._finished.pop(key, None)

    def unregister(self, handle: ProgressHandle) -> None:
        """Remove *handle* if it is still the one registered for its key."""
        if not handle.key:
            return
        with self._lock:
            if self._active.get(handle.key) is handle:
                del self._active[handle.key]
                self._finished[handle.key] = handle.percent

    def get(self, key: str) -> ProgressHandle | None:
        with self._lock:
            return self._active.get(key)

    def percent_for(self, key: str) -> int:
        """Last known integer progress for *key*, 0 if never set."""
        with self._lock:
            handle = self._active.get(key)
            if handle is not None:
                return handle.percent
            return int(self._finished.get(key, 0))
