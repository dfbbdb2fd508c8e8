"""FastAPI dependencies shared by the endpoint modules."""
from fastapi import Depends

from app.services.history import HistoryStore
from app.services.pipeline import DownloadPipeline
from app.services.progress import ProgressRegistry

_pipeline: DownloadPipeline | None = None


def get_pipeline() -> DownloadPipeline:
    """Return the process-wide download pipeline (created on first use)."""
    global _pipeline
    if _pipeline is None:
        _pipeline = DownloadPipeline()
    return _pipeline


def get_progress_registry(
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> ProgressRegistry:
    return pipeline.progress


def get_history_store(
    pipeline: DownloadPipeline = Depends(get_pipeline),
) -> HistoryStore:
    return pipeline.history
