"""Test configuration and fixtures."""
import json
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_pipeline
from app.core.config import settings
from app.main import create_app
from app.services.process import ToolResult
from app.services.pipeline import DownloadPipeline

VIDEO_URL = "https://www.youtube.com/watch?v=abc123"


def sample_info(**overrides: Any) -> dict[str, Any]:
    """A trimmed yt-dlp info dict with one muxed and several split formats."""
    info: dict[str, Any] = {
        "id": "abc123",
        "title": "Test Video",
        "uploader": "Test Channel",
        "duration": 180,
        "thumbnail": "https://example.com/thumb.jpg",
        "webpage_url": VIDEO_URL,
        "formats": [
            {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2",
             "filesize": 3_000_000},
            {"format_id": "18", "ext": "mp4", "height": 360, "vcodec": "avc1", "acodec": "mp4a",
             "filesize": 10 * 1024 * 1024},
            {"format_id": "136", "ext": "mp4", "height": 720, "vcodec": "avc1", "acodec": "none",
             "filesize_approx": 50 * 1024 * 1024},
            {"format_id": "247", "ext": "webm", "height": 720, "vcodec": "vp9", "acodec": "none",
             "filesize_approx": 40 * 1024 * 1024},
            {"format_id": "398", "ext": "mp4", "height": 720, "vcodec": "av01", "acodec": "none",
             "filesize_approx": 48 * 1024 * 1024},
            {"format_id": "135", "ext": "mp4", "height": 480, "vcodec": "avc1", "acodec": "none",
             "filesize_approx": 20 * 1024 * 1024},
        ],
    }
    info.update(overrides)
    return info


class FakeTools:
    """Stands in for yt-dlp and ffmpeg.

    Metadata calls print ``info`` as JSON, download calls write ``payload``
    to the ``-o`` path while emitting progress lines, and ffmpeg calls write
    the concatenated inputs to the output path. Any binary listed in
    ``fail`` exits with status 1 instead.
    """

    def __init__(
        self,
        info: dict[str, Any] | None = None,
        payload: bytes = b"\x00" * 4096,
        fail: set[str] | None = None,
        metadata_stdout: str | None = None,
    ) -> None:
        self.info = info if info is not None else sample_info()
        self.payload = payload
        self.fail = fail or set()
        self.metadata_stdout = metadata_stdout
        self.calls: list[list[str]] = []
        self.on_call: Callable[[list[str]], None] | None = None

    def kind(self, cmd: list[str]) -> str:
        if cmd[0] == settings.FFMPEG_BINARY:
            return "assemble"
        if "--dump-single-json" in cmd:
            return "resolve"
        return "fetch"

    def calls_of(self, kind: str) -> list[list[str]]:
        return [c for c in self.calls if self.kind(c) == kind]

    async def __call__(
        self,
        cmd: list[str],
        *,
        timeout: float | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> ToolResult:
        self.calls.append(cmd)
        if self.on_call is not None:
            self.on_call(cmd)
        kind = self.kind(cmd)

        if kind in self.fail:
            return ToolResult(returncode=1, stdout="", stderr=f"ERROR: {kind} exploded")

        if kind == "resolve":
            stdout = self.metadata_stdout
            if stdout is None:
                stdout = json.dumps(self.info)
            return ToolResult(returncode=0, stdout=stdout, stderr="")

        if kind == "fetch":
            output = Path(cmd[cmd.index("-o") + 1])
            for line in ("[download] Destination: x", "[download]  50.0% of 1.00MiB",
                         "[download] 100.0% of 1.00MiB"):
                if on_line is not None:
                    on_line(line)
            output.write_bytes(self.payload)
            return ToolResult(returncode=0, stdout="", stderr="")

        output = Path(cmd[-1])
        video = Path(cmd[cmd.index("-i") + 1]).read_bytes()
        output.write_bytes(video + b"merged")
        return ToolResult(returncode=0, stdout="", stderr="")


@pytest.fixture(autouse=True)
def download_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every test at its own empty download directory."""
    target = tmp_path / "downloads"
    target.mkdir()
    monkeypatch.setattr(settings, "DOWNLOAD_DIR", str(target))
    monkeypatch.setattr(settings, "DISCONNECT_POLL_INTERVAL", 0.01)
    return target


@pytest.fixture
def fake_tools() -> FakeTools:
    return FakeTools()


@pytest.fixture
def pipeline(fake_tools: FakeTools) -> DownloadPipeline:
    return DownloadPipeline(runner=fake_tools)


@pytest.fixture
def client(pipeline: DownloadPipeline) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app.

    Yields:
        TestClient instance wired to a pipeline backed by fake tools
    """
    app = create_app()
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    with TestClient(app) as test_client:
        yield test_client
