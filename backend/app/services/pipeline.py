"""Resolve -> fetch -> (assemble) -> stream orchestration for one download."""
import asyncio
import time
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine

from app.core.config import settings
from app.core.logging import get_logger
from app.services.assembler import Assembler
from app.services.download_jobs import DownloadJob, JobState
from app.services.errors import DeliveryError
from app.services.fetcher import (
    BEST_AUDIO_SELECTOR,
    BEST_COMBINED_SELECTOR,
    Fetcher,
    validate_format_id,
)
from app.services.history import HistoryStore
from app.services.process import ToolRunner, run_tool
from app.services.progress import ProgressRegistry
from app.services.resolver import ResolverClient
from app.services.urls import normalize_url, sanitize_url_for_logging

logger = get_logger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]

# Overall progress weights
COMBINED_FETCH_WEIGHT = 90.0
VIDEO_FETCH_WEIGHT = 65.0
AUDIO_FETCH_WEIGHT = 25.0
MERGE_PROGRESS = 92.0
READY_PROGRESS = 95.0


class DownloadPipeline:
    """Owns the resolver, fetcher and assembler used by download requests."""

    def __init__(
        self,
        runner: ToolRunner = run_tool,
        progress: ProgressRegistry | None = None,
        history: HistoryStore | None = None,
    ) -> None:
        self.resolver = ResolverClient(runner)
        self.fetcher = Fetcher(runner)
        self.assembler = Assembler(runner)
        self.progress = progress if progress is not None else ProgressRegistry()
        self.history = history if history is not None else HistoryStore()

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def create_job(self, url: str, format_id: str | None = None) -> DownloadJob:
        """Validate the request and allocate a job (no files are created).

        Raises:
            InvalidUrlError: If URL is invalid or blocked
            InvalidFormatError: If format_id contains unsafe characters
        """
        url = normalize_url(url)
        if format_id is not None:
            validate_format_id(format_id)
        work_dir = Path(settings.DOWNLOAD_DIR)
        work_dir.mkdir(parents=True, exist_ok=True)
        return DownloadJob(url=url, work_dir=work_dir, format_id=format_id)

    # ------------------------------------------------------------------
    # Preparation (everything before the first response byte)
    # ------------------------------------------------------------------

    async def prepare(
        self,
        job: DownloadJob,
        is_disconnected: DisconnectCheck | None = None,
    ) -> DownloadJob:
        """Run the job up to the STREAMING state.

        When *is_disconnected* is given the client connection is polled while
        the external tools run; a disconnect cancels the work (killing any
        running subprocess) and raises :class:`DeliveryError`.

        Raises:
            ResolveError, FetchError, AssembleError, DeliveryError
        """
        try:
            if is_disconnected is None:
                return await self._prepare(job)
            return await self._prepare_watched(job, is_disconnected)
        finally:
            if job.state is not JobState.STREAMING:
                job.fail("Preparation did not complete")
                self._finish(job)

    async def _prepare_watched(
        self,
        job: DownloadJob,
        is_disconnected: DisconnectCheck,
    ) -> DownloadJob:
        # is_disconnected() may run in a cancel scope that absorbs task.cancel(),
        # so the watcher is stopped through this event instead
        stop = asyncio.Event()
        work = asyncio.create_task(self._prepare(job))
        watcher = asyncio.create_task(self._watch_disconnect(is_disconnected, stop))
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if work.done():
                return work.result()

            logger.warning(f"Job {job.token[:8]}: client disconnected during {job.state.value}")
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            raise DeliveryError(
                "Client disconnected before the download was ready",
                client_gone=True,
            )
        finally:
            stop.set()
            if not work.done():
                work.cancel()
            await asyncio.gather(work, watcher, return_exceptions=True)

    @staticmethod
    async def _watch_disconnect(is_disconnected: DisconnectCheck, stop: asyncio.Event) -> bool:
        """Poll until the client disconnects (True) or *stop* is set (False)."""
        while not stop.is_set():
            if await is_disconnected():
                return True
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.DISCONNECT_POLL_INTERVAL)
            except asyncio.TimeoutError:
                continue
        return False

    async def _prepare(self, job: DownloadJob) -> DownloadJob:
        with job.cleanup_on_error():
            job.advance(JobState.RESOLVING)
            job.progress.update(0, phase="resolve")
            resolved = await self.resolver.resolve(job.url)
            job.metadata = resolved.metadata
            self.progress.register(resolved.metadata.id, job.progress)

            job.advance(JobState.FETCHING)
            if resolved.bundles_audio(job.format_id):
                output = await self._fetch_combined(job)
            else:
                output = await self._fetch_and_assemble(job)

            if not output.is_file():
                raise DeliveryError("Finished file not found")
            job.output_path = output
            job.output_size = output.stat().st_size
            job.advance(JobState.STREAMING)
            job.progress.update(READY_PROGRESS, phase="stream")

        logger.info(
            f"Job {job.token[:8]}: ready to stream {job.output_size:,} bytes "
            f"of '{job.metadata.title}'"
        )
        return job

    async def _fetch_combined(self, job: DownloadJob) -> Path:
        selector = job.format_id or BEST_COMBINED_SELECTOR
        return await self.fetcher.fetch(
            job.url,
            selector,
            job.track(job.base_path),
            on_progress=lambda pct: job.progress.update(
                pct * COMBINED_FETCH_WEIGHT / 100, phase="video"
            ),
        )

    async def _fetch_and_assemble(self, job: DownloadJob) -> Path:
        # Format ids unknown to the metadata are treated as video-only
        shares = {"video": 0.0, "audio": 0.0}

        def _report(kind: str, weight: float) -> Callable[[float], None]:
            def _update(pct: float) -> None:
                shares[kind] = max(shares[kind], pct * weight / 100)
                job.progress.update(shares["video"] + shares["audio"], phase=kind)
            return _update

        def fetch_video() -> Coroutine[Any, Any, Path]:
            return self.fetcher.fetch(
                job.url,
                job.format_id or BEST_COMBINED_SELECTOR,
                job.track(job.video_path),
                on_progress=_report("video", VIDEO_FETCH_WEIGHT),
            )

        def fetch_audio() -> Coroutine[Any, Any, Path]:
            return self.fetcher.fetch(
                job.url,
                BEST_AUDIO_SELECTOR,
                job.track(job.audio_path),
                on_progress=_report("audio", AUDIO_FETCH_WEIGHT),
            )

        if settings.FETCH_PARALLEL_STREAMS:
            tasks = [asyncio.create_task(fetch_video()), asyncio.create_task(fetch_audio())]
            try:
                video_path, audio_path = await asyncio.gather(*tasks)
            except BaseException:
                # One stream failed: stop the other before files are removed
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        else:
            video_path = await fetch_video()
            audio_path = await fetch_audio()

        job.advance(JobState.ASSEMBLING)
        job.progress.update(MERGE_PROGRESS, phase="merge")
        output = await self.assembler.assemble(
            video_path, audio_path, job.track(job.base_path)
        )

        # Sources are not needed once the merged file exists
        job.discard(video_path)
        job.discard(audio_path)
        return output

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def stream(self, job: DownloadJob) -> AsyncIterator[bytes]:
        """Stream the finished file, then release the job.

        Args:
            job: A job in the STREAMING state

        Yields:
            Chunks of file data
        """
        if job.output_path is None or job.state is not JobState.STREAMING:
            raise DeliveryError(f"Job is not ready to stream (state: {job.state.value})")

        chunk_size = settings.STREAM_CHUNK_SIZE
        completed = False
        sent = 0
        try:
            with open(job.output_path, "rb") as f:
                # Stop at the known size: clients close as soon as they hold
                # Content-Length bytes, so no read may follow the last chunk.
                while sent < job.output_size:
                    chunk = await asyncio.to_thread(f.read, min(chunk_size, job.output_size - sent))
                    if not chunk:
                        break
                    yield chunk
                    sent += len(chunk)
            completed = sent == job.output_size
        except OSError as e:
            logger.error(f"Job {job.token[:8]}: stream aborted: {e}")
            raise
        finally:
            if completed and job.state is JobState.STREAMING:
                job.advance(JobState.DONE)
                job.progress.update(100, phase="done")
                if job.metadata is not None:
                    self.history.record(job.metadata, job.url, job.format_id)
            else:
                job.fail("Stream closed before the file was fully sent")
            self._finish(job)

    def finish(self, job: DownloadJob) -> None:
        """Release *job* after its response ended (idempotent)."""
        if not job.finished:
            job.fail("Response ended before the stream completed")
        self._finish(job)

    def _finish(self, job: DownloadJob) -> None:
        job.release()
        self.progress.unregister(job.progress)
        safe_url = sanitize_url_for_logging(job.url)
        elapsed = time.time() - job.created_at
        logger.debug(
            f"Job {job.token[:8]} finished as {job.state.value} after {elapsed:.1f}s for {safe_url}"
        )
