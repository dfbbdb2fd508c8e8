"""Per-request download jobs and their temporary files.

Each download gets a ``DownloadJob`` that names its temp files after a
random token, tracks every file it creates, and walks the lifecycle
``pending -> resolving -> fetching -> [assembling] -> streaming -> done``
(or ``failed`` from any unfinished state).
"""
import glob
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from app.core.logging import get_logger
from app.models.video import VideoMetadata
from app.services.progress import ProgressHandle

logger = get_logger(__name__)


class JobState(str, Enum):
    """Lifecycle states of a download job."""

    PENDING = "pending"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    ASSEMBLING = "assembling"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.RESOLVING},
    JobState.RESOLVING: {JobState.FETCHING},
    JobState.FETCHING: {JobState.ASSEMBLING, JobState.STREAMING},
    JobState.ASSEMBLING: {JobState.STREAMING},
    JobState.STREAMING: {JobState.DONE},
    JobState.DONE: set(),
    JobState.FAILED: set(),
}


class InvalidTransitionError(RuntimeError):
    """Raised on a lifecycle transition the state machine does not allow."""


@dataclass
class DownloadJob:
    """Tracks the state and temporary files of a single download."""

    url: str
    work_dir: Path
    format_id: str | None = None
    token: str = field(default_factory=lambda: secrets.token_hex(16))
    state: JobState = JobState.PENDING
    metadata: VideoMetadata | None = None
    progress: ProgressHandle = field(default_factory=ProgressHandle)
    output_path: Path | None = None
    output_size: int = 0
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    _temp_files: list[Path] = field(default_factory=list, repr=False)
    _released: bool = field(default=False, repr=False)

    # ------------------------------------------------------------------
    # Temp file naming
    # ------------------------------------------------------------------

    @property
    def base_path(self) -> Path:
        """Final MP4 location."""
        return self.work_dir / f"{self.token}.mp4"

    @property
    def video_path(self) -> Path:
        return self.work_dir / f"{self.token}.mp4.video"

    @property
    def audio_path(self) -> Path:
        return self.work_dir / f"{self.token}.mp4.audio"

    def track(self, path: Path) -> Path:
        """Remember *path* so it is deleted when the job is released."""
        if path not in self._temp_files:
            self._temp_files.append(path)
        return path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED)

    def advance(self, state: JobState) -> None:
        """Move to *state*, enforcing the allowed transitions."""
        if state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Job {self.token[:8]}: cannot go from {self.state.value} to {state.value}"
            )
        logger.debug(f"Job {self.token[:8]}: {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, reason: str) -> None:
        """Mark the job failed unless it already finished."""
        if self.finished:
            return
        logger.warning(f"Job {self.token[:8]} failed during {self.state.value}: {reason}")
        self.state = JobState.FAILED
        self.error = reason
        self.progress.update(0, phase="failed")

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def discard(self, path: Path) -> None:
        """Delete one temp file now; a missing file is fine."""
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Failed to delete temp file {path}: {e}")
        if path in self._temp_files:
            self._temp_files.remove(path)

    def release(self) -> list[Path]:
        """Delete every file this job created. Safe to call more than once.

        Besides the tracked paths, any stray ``<token>*`` file left by an
        external tool (partial downloads, intermediate fragments) is removed.

        Returns:
            Paths that were actually deleted
        """
        removed: list[Path] = []
        candidates = list(self._temp_files)
        candidates.extend(
            Path(p) for p in glob.glob(str(self.work_dir / f"{glob.escape(self.token)}*"))
        )
        for path in dict.fromkeys(candidates):
            try:
                path.unlink()
                removed.append(path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Failed to delete temp file {path}: {e}")
        self._temp_files.clear()
        if removed and not self._released:
            logger.info(f"Job {self.token[:8]}: removed {len(removed)} temp file(s)")
        self._released = True
        return removed

    @contextmanager
    def cleanup_on_error(self) -> Iterator["DownloadJob"]:
        """Scope in which any exception or cancellation fails the job and
        deletes its files before propagating."""
        try:
            yield self
        except BaseException as exc:
            self.fail(str(exc) or exc.__class__.__name__)
            self.release()
            raise
