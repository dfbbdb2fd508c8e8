"""Pydantic models for video metadata and the API contracts built on it."""
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Added to every reported size to account for container/mux overhead
SIZE_PADDING_MB = 2.0
BYTES_PER_MB = 1024 * 1024


def padded_size_mb(size_bytes: int) -> float:
    return round(size_bytes / BYTES_PER_MB + SIZE_PADDING_MB, 2)


class VideoMetadata(BaseModel):
    """Resolved metadata for a single remote video."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Source-assigned video identifier", min_length=1)
    title: str = Field(..., description="Video title", min_length=1)
    uploader: str = Field(default="Unknown", description="Uploader or channel name")
    duration_seconds: int | None = Field(default=None, description="Duration in seconds", ge=0)
    thumbnail_url: str | None = Field(default=None, description="Thumbnail image URL")


class StreamVariant(BaseModel):
    """One encoded quality of a video that can be re-requested by format id."""

    model_config = ConfigDict(frozen=True)

    quality: str = Field(..., description="Quality label (e.g., '720p')")
    format_id: str = Field(..., description="Opaque format token understood by yt-dlp")
    ext: str = Field(default="mp4", description="Container extension")
    filesize_bytes: int = Field(default=0, description="Size reported by the source", ge=0)

    @property
    def filesize_mb(self) -> float:
        """Reported size in MB plus mux overhead padding, 2 decimals."""
        return padded_size_mb(self.filesize_bytes)


class ResolvedVideo(BaseModel):
    """Resolver output: metadata, presentable variants and muxed format ids."""

    model_config = ConfigDict(frozen=True)

    metadata: VideoMetadata
    variants: list[StreamVariant] = Field(default_factory=list)
    muxed_format_ids: frozenset[str] = Field(
        default_factory=frozenset,
        description="Every raw format id carrying both video and audio",
    )

    def bundles_audio(self, format_id: str | None) -> bool:
        """Return True when *format_id* can be delivered without muxing."""
        if format_id is None:
            return True
        return format_id in self.muxed_format_ids


class UrlRequest(BaseModel):
    """Request body carrying just a video URL."""

    url: str = Field(
        ...,
        description="URL of the video",
        min_length=10,
        max_length=2048,
        examples=["https://www.youtube.com/watch?v=dQw4w9WgXcQ"],
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Basic URL validation."""
        v = v.strip()
        if not v:
            raise ValueError("URL cannot be empty")
        return v


class DownloadRequest(UrlRequest):
    """Request model for downloading a video."""

    format_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("formatId", "format_id"),
        description="Format ID from /video-info; omitted means the best combined stream",
        max_length=500,
        examples=["22", "137"],
    )

    @field_validator("format_id")
    @classmethod
    def blank_format_is_default(cls, v: str | None) -> str | None:
        """Treat an empty format id like a missing one."""
        if v is None:
            return None
        return v.strip() or None


class FormatOption(BaseModel):
    """A downloadable quality as presented to the frontend."""

    quality: str = Field(..., description="Quality label (e.g., '720p')")
    format_id: str = Field(..., serialization_alias="formatId")
    filesize: float = Field(..., description="Approximate size in MB")
    itag: str = Field(..., description="Same value as formatId (legacy clients)")

    @classmethod
    def from_variant(cls, variant: StreamVariant) -> "FormatOption":
        return cls(
            quality=variant.quality,
            format_id=variant.format_id,
            filesize=variant.filesize_mb,
            itag=variant.format_id,
        )


class VideoInfoResponse(BaseModel):
    """Response model for /video-info."""

    title: str
    thumbnail: str | None = None
    duration: int | None = None
    author: str
    formats: list[FormatOption]

    @classmethod
    def from_resolved(cls, resolved: ResolvedVideo) -> "VideoInfoResponse":
        meta = resolved.metadata
        return cls(
            title=meta.title,
            thumbnail=meta.thumbnail_url,
            duration=meta.duration_seconds,
            author=meta.uploader,
            formats=[FormatOption.from_variant(v) for v in resolved.variants],
        )


class TitleResponse(BaseModel):
    """Response model for /get-title."""

    channel: str
    title: str
    video_id: str = Field(..., serialization_alias="videoId")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(
        ...,
        description="Human-readable error message",
        min_length=1,
    )
    details: str | None = Field(
        default=None,
        description="Diagnostic text from the failing stage, when available",
    )
    code: Literal[
        "INVALID_URL",
        "INVALID_FORMAT",
        "RESOLVE_FAILED",
        "FETCH_FAILED",
        "ASSEMBLE_FAILED",
        "DELIVERY_FAILED",
        "INTERNAL_ERROR",
    ] = Field(
        ...,
        description="Stable error code for programmatic handling",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Video fetch failed",
                "details": "ERROR: [youtube] abc: Video unavailable",
                "code": "RESOLVE_FAILED",
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(
        default="healthy",
        description="Health status of the service",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    yt_dlp_version: str | None = Field(
        default=None,
        description="Installed yt-dlp version",
    )
