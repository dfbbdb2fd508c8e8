"""Pydantic models for the download history log."""
from pydantic import BaseModel, ConfigDict, Field


class HistoryRecord(BaseModel):
    """One completed download."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Server-assigned record identifier")
    video_id: str = Field(..., serialization_alias="videoId")
    title: str
    author: str
    url: str
    format_id: str | None = Field(default=None, serialization_alias="formatId")
    timestamp: float = Field(..., description="Unix time the download completed")
