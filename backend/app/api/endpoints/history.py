"""Download history endpoint."""
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_history_store
from app.core.config import settings
from app.models.history import HistoryRecord
from app.services.history import HistoryStore

router = APIRouter()


@router.get(
    "/history",
    response_model=list[HistoryRecord],
    summary="Recent downloads",
    description="Most recent completed downloads, newest first",
)
async def download_history(
    limit: int = Query(settings.HISTORY_LIMIT, ge=1, le=50),
    store: HistoryStore = Depends(get_history_store),
) -> list[HistoryRecord]:
    return store.recent(limit)
