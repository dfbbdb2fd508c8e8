"""Tests for job lifecycle, orchestration and cleanup."""
import asyncio
import logging
from pathlib import Path

import pytest

from app.core.config import settings
from app.services.download_jobs import DownloadJob, InvalidTransitionError, JobState
from app.services.errors import (
    AssembleError,
    DeliveryError,
    FetchError,
    InvalidFormatError,
    InvalidUrlError,
    ResolveError,
)
from app.services.pipeline import DownloadPipeline
from conftest import VIDEO_URL, FakeTools


async def _drain(pipeline: DownloadPipeline, job: DownloadJob) -> bytes:
    data = b""
    async for chunk in pipeline.stream(job):
        data += chunk
    return data


class TestDownloadJob:
    """Tests for the job state machine and temp-file bookkeeping."""

    def test_temp_file_names(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)

        assert len(job.token) == 32
        assert job.base_path.name == f"{job.token}.mp4"
        assert job.video_path.name == f"{job.token}.mp4.video"
        assert job.audio_path.name == f"{job.token}.mp4.audio"

    def test_tokens_are_unique(self, download_dir: Path) -> None:
        tokens = {DownloadJob(url=VIDEO_URL, work_dir=download_dir).token for _ in range(50)}
        assert len(tokens) == 50

    def test_happy_path_transitions(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)
        for state in (JobState.RESOLVING, JobState.FETCHING, JobState.ASSEMBLING,
                      JobState.STREAMING, JobState.DONE):
            job.advance(state)
        assert job.finished

    def test_illegal_transition(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)
        with pytest.raises(InvalidTransitionError):
            job.advance(JobState.STREAMING)

    def test_fail_is_terminal_and_skips_done_jobs(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)
        job.fail("boom")
        assert job.state is JobState.FAILED
        with pytest.raises(InvalidTransitionError):
            job.advance(JobState.RESOLVING)

        done = DownloadJob(url=VIDEO_URL, work_dir=download_dir, state=JobState.DONE)
        done.fail("late")
        assert done.state is JobState.DONE

    def test_release_removes_tracked_and_stray_files(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)
        job.track(job.video_path).write_bytes(b"v")
        stray = download_dir / f"{job.token}.mp4.video.part"
        stray.write_bytes(b"p")
        job.track(job.audio_path)  # never created
        other = download_dir / "someone-else.mp4"
        other.write_bytes(b"keep")

        removed = job.release()

        assert set(removed) == {job.video_path, stray}
        assert list(download_dir.iterdir()) == [other]
        assert job.release() == []

    def test_cleanup_on_error_scope(self, download_dir: Path) -> None:
        job = DownloadJob(url=VIDEO_URL, work_dir=download_dir)
        job.advance(JobState.RESOLVING)

        with pytest.raises(ValueError):
            with job.cleanup_on_error():
                job.track(job.base_path).write_bytes(b"partial")
                raise ValueError("tool crashed")

        assert job.state is JobState.FAILED
        assert job.error == "tool crashed"
        assert list(download_dir.iterdir()) == []


class TestCreateJob:
    def test_rejects_bad_url(self, pipeline: DownloadPipeline) -> None:
        with pytest.raises(InvalidUrlError):
            pipeline.create_job("ftp://example.com/video")

    def test_rejects_bad_format(self, pipeline: DownloadPipeline) -> None:
        with pytest.raises(InvalidFormatError):
            pipeline.create_job(VIDEO_URL, "-o /etc/passwd")


class TestPipeline:
    """End-to-end pipeline runs with fake tools."""

    def test_combined_stream_skips_assembly(
        self, pipeline: DownloadPipeline, fake_tools: FakeTools, download_dir: Path
    ) -> None:
        job = pipeline.create_job(VIDEO_URL, "18")

        asyncio.run(pipeline.prepare(job))

        assert job.state is JobState.STREAMING
        assert job.output_path == job.base_path
        assert job.output_size == len(fake_tools.payload)
        assert fake_tools.calls_of("assemble") == []
        fetch = fake_tools.calls_of("fetch")
        assert len(fetch) == 1
        assert fetch[0][fetch[0].index("-f") + 1] == "18"

        data = asyncio.run(_drain(pipeline, job))

        assert data == fake_tools.payload
        assert job.state is JobState.DONE
        assert list(download_dir.iterdir()) == []

    def test_default_format_is_best_combined(
        self, pipeline: DownloadPipeline, fake_tools: FakeTools
    ) -> None:
        job = pipeline.create_job(VIDEO_URL)

        asyncio.run(pipeline.prepare(job))

        fetch = fake_tools.calls_of("fetch")
        assert len(fetch) == 1
        assert fetch[0][fetch[0].index("-f") + 1] == "best[ext=mp4]/best"
        assert fake_tools.calls_of("assemble") == []
        pipeline.finish(job)

    @pytest.mark.parametrize("parallel", [True, False])
    def test_video_only_format_is_merged(
        self,
        parallel: bool,
        pipeline: DownloadPipeline,
        fake_tools: FakeTools,
        download_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "FETCH_PARALLEL_STREAMS", parallel)
        job = pipeline.create_job(VIDEO_URL, "136")

        asyncio.run(pipeline.prepare(job))

        selectors = sorted(c[c.index("-f") + 1] for c in fake_tools.calls_of("fetch"))
        assert selectors == ["136", "bestaudio[ext=m4a]/bestaudio"]
        assert len(fake_tools.calls_of("assemble")) == 1
        # Sources are deleted right after muxing
        assert sorted(p.name for p in download_dir.iterdir()) == [f"{job.token}.mp4"]
        assert job.progress.percent == 95

        data = asyncio.run(_drain(pipeline, job))

        assert data.endswith(b"merged")
        assert job.progress.percent == 100
        assert list(download_dir.iterdir()) == []

    def test_resolve_failure_creates_no_files(
        self, download_dir: Path
    ) -> None:
        tools = FakeTools(fail={"resolve"})
        pipeline = DownloadPipeline(runner=tools)
        job = pipeline.create_job(VIDEO_URL, "136")

        with pytest.raises(ResolveError):
            asyncio.run(pipeline.prepare(job))

        assert job.state is JobState.FAILED
        assert tools.calls_of("fetch") == []
        assert list(download_dir.iterdir()) == []

    def test_fetch_failure_cleans_up(self, download_dir: Path) -> None:
        pipeline = DownloadPipeline(runner=FakeTools(fail={"fetch"}))
        job = pipeline.create_job(VIDEO_URL, "136")

        with pytest.raises(FetchError):
            asyncio.run(pipeline.prepare(job))

        assert job.state is JobState.FAILED
        assert list(download_dir.iterdir()) == []

    def test_assemble_failure_removes_sources(self, download_dir: Path) -> None:
        tools = FakeTools(fail={"assemble"})
        pipeline = DownloadPipeline(runner=tools)
        job = pipeline.create_job(VIDEO_URL, "136")

        with pytest.raises(AssembleError):
            asyncio.run(pipeline.prepare(job))

        assert len(tools.calls_of("fetch")) == 2
        assert job.state is JobState.FAILED
        assert list(download_dir.iterdir()) == []

    def test_history_recorded_after_stream(self, pipeline: DownloadPipeline) -> None:
        job = pipeline.create_job(VIDEO_URL, "18")
        asyncio.run(pipeline.prepare(job))
        assert pipeline.history.recent() == []

        asyncio.run(_drain(pipeline, job))

        records = pipeline.history.recent()
        assert len(records) == 1
        assert records[0].video_id == "abc123"
        assert records[0].format_id == "18"

    def test_progress_registered_under_video_id(self, pipeline: DownloadPipeline) -> None:
        job = pipeline.create_job(VIDEO_URL, "18")
        asyncio.run(pipeline.prepare(job))

        assert pipeline.progress.get("abc123") is job.progress
        assert pipeline.progress.percent_for("abc123") == 95

        asyncio.run(_drain(pipeline, job))

        assert pipeline.progress.get("abc123") is None
        assert pipeline.progress.percent_for("abc123") == 100


class TestCancellation:
    """Client disconnects and abandoned streams."""

    def test_disconnect_during_fetch(self, download_dir: Path) -> None:
        """A disconnect cancels the in-flight fetch and removes partial files."""

        async def disconnect_mid_fetch() -> tuple[DownloadJob, bool]:
            fetch_started = asyncio.Event()
            disconnected = False
            cancelled = False

            async def hanging_runner(cmd, *, timeout=None, on_line=None):
                nonlocal cancelled
                tools = FakeTools()
                if tools.kind(cmd) == "resolve":
                    return await tools(cmd)
                Path(cmd[cmd.index("-o") + 1]).write_bytes(b"partial")
                fetch_started.set()
                try:
                    await asyncio.sleep(60)
                except asyncio.CancelledError:
                    cancelled = True
                    raise

            async def is_disconnected() -> bool:
                return disconnected

            pipeline = DownloadPipeline(runner=hanging_runner)
            job = pipeline.create_job(VIDEO_URL, "136")
            prepare = asyncio.create_task(pipeline.prepare(job, is_disconnected))
            await fetch_started.wait()
            disconnected = True
            with pytest.raises(DeliveryError) as exc_info:
                await prepare
            assert exc_info.value.client_gone
            return job, cancelled

        job, cancelled = asyncio.run(disconnect_mid_fetch())

        assert cancelled
        assert job.state is JobState.FAILED
        assert list(download_dir.iterdir()) == []

    def test_abandoned_stream_is_released(
        self,
        pipeline: DownloadPipeline,
        fake_tools: FakeTools,
        download_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(settings, "STREAM_CHUNK_SIZE", 65536)
        fake_tools.payload = b"\x01" * (65536 * 3)
        job = pipeline.create_job(VIDEO_URL, "18")

        async def read_one_chunk() -> None:
            await pipeline.prepare(job)
            stream = pipeline.stream(job)
            await stream.__anext__()
            await stream.aclose()

        asyncio.run(read_one_chunk())

        assert job.state is JobState.FAILED
        assert list(download_dir.iterdir()) == []
        assert pipeline.history.recent() == []

    def test_finish_is_idempotent(self, pipeline: DownloadPipeline, download_dir: Path) -> None:
        job = pipeline.create_job(VIDEO_URL, "18")
        asyncio.run(pipeline.prepare(job))

        pipeline.finish(job)
        pipeline.finish(job)

        assert job.state is JobState.FAILED
        assert list(download_dir.iterdir()) == []

    def test_disconnect_poll_that_absorbs_cancel(
        self, pipeline: DownloadPipeline, download_dir: Path
    ) -> None:
        """A disconnect check that swallows cancellation must not stall preparation."""
        absorbed = 0

        async def absorbing_check() -> bool:
            nonlocal absorbed
            try:
                await asyncio.sleep(0.05)
            except asyncio.CancelledError:
                if absorbed:
                    raise
                absorbed += 1
            return False

        job = pipeline.create_job(VIDEO_URL, "18")

        asyncio.run(asyncio.wait_for(pipeline.prepare(job, absorbing_check), timeout=5))

        assert job.state is JobState.STREAMING
        pipeline.finish(job)

    def test_client_closing_after_last_byte_completes(
        self,
        pipeline: DownloadPipeline,
        fake_tools: FakeTools,
        download_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """The job is done once every byte was sent, even if the client leaves at once."""
        monkeypatch.setattr(settings, "STREAM_CHUNK_SIZE", 65536)
        fake_tools.payload = b"\x02" * (65536 * 3)
        job = pipeline.create_job(VIDEO_URL, "18")

        async def send_then_disconnect() -> bytes:
            await pipeline.prepare(job)
            received = bytearray()
            all_sent = asyncio.Event()

            async def send_body() -> None:
                async for chunk in pipeline.stream(job):
                    received.extend(chunk)
                    if len(received) == job.output_size:
                        all_sent.set()

            sender = asyncio.create_task(send_body())
            await all_sent.wait()
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            return bytes(received)

        data = asyncio.run(send_then_disconnect())

        assert data == fake_tools.payload
        assert job.state is JobState.DONE
        assert len(pipeline.history.recent()) == 1
        assert list(download_dir.iterdir()) == []

    def test_truncated_file_is_not_done(
        self, pipeline: DownloadPipeline, download_dir: Path
    ) -> None:
        job = pipeline.create_job(VIDEO_URL, "18")
        asyncio.run(pipeline.prepare(job))
        job.output_path.write_bytes(b"short")

        data = asyncio.run(_drain(pipeline, job))

        assert data == b"short"
        assert job.state is JobState.FAILED
        assert pipeline.history.recent() == []

    def test_finish_logs_job_duration(
        self, pipeline: DownloadPipeline, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.DEBUG, logger="app.services.pipeline")
        job = pipeline.create_job(VIDEO_URL, "18")
        asyncio.run(pipeline.prepare(job))

        asyncio.run(_drain(pipeline, job))

        assert any(
            f"Job {job.token[:8]} finished as done after" in r.getMessage()
            for r in caplog.records
        )
