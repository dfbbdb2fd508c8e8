"""Application configuration using pydantic-settings."""
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENV: Literal["development", "production", "test"] = "development"
    DEBUG: bool = False
    PORT: int = Field(default=3001, ge=1, le=65535)

    # API Configuration
    API_PREFIX: str = "/api"
    STATIC_DIR: str | None = Field(
        default=None,
        description="Directory with a built frontend to serve at / (disabled when unset)",
    )

    # CORS Configuration
    CORS_ORIGINS: str = Field(
        default="http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Security
    BLOCK_PRIVATE_NETWORKS: bool = Field(
        default=True,
        description="Block URLs pointing to private networks (SSRF protection)",
    )
    ALLOWED_URL_SCHEMES: str = Field(
        default="http,https",
        description="Comma-separated list of allowed URL schemes",
    )

    # Storage
    DOWNLOAD_DIR: str = Field(
        default="/tmp/youtube-downloads",
        description="Directory holding per-request temporary media files",
    )

    @field_validator("CORS_ORIGINS")
    @classmethod
    def parse_cors_origins(cls, v: str) -> str:
        """Ensure CORS_ORIGINS is properly formatted."""
        return v.strip()

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def allowed_schemes_list(self) -> list[str]:
        """Get allowed URL schemes as a list."""
        return [scheme.strip().lower() for scheme in self.ALLOWED_URL_SCHEMES.split(",") if scheme.strip()]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENV == "production"

    # External tools
    YTDLP_BINARY: str = Field(default="yt-dlp", description="yt-dlp executable")
    FFMPEG_BINARY: str = Field(default="ffmpeg", description="ffmpeg executable")
    YTDLP_USER_AGENT: str | None = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="User agent passed to yt-dlp (empty disables)",
    )
    YTDLP_COOKIES_FILE: str | None = Field(
        default=None,
        description="Netscape-format cookies file passed to yt-dlp --cookies",
    )
    YTDLP_PROXY: str | None = Field(
        default=None,
        description="HTTP/HTTPS/SOCKS proxy URL (e.g., http://proxy:8080)"
    )
    YTDLP_NO_CHECK_CERTIFICATES: bool = Field(
        default=True,
        description="Pass --no-check-certificates to yt-dlp",
    )
    YTDLP_SOCKET_TIMEOUT: int = Field(
        default=30,
        ge=1,
        le=300,
        description="yt-dlp --socket-timeout value in seconds"
    )

    # Fetch policy (keeps a single request from saturating the host link)
    FETCH_RETRIES: int = Field(default=10, ge=0, le=50)
    FETCH_LIMIT_RATE: str = Field(
        default="1.4M",
        description="yt-dlp --limit-rate bandwidth ceiling per stream",
    )
    FETCH_CONCURRENT_FRAGMENTS: int = Field(
        default=1,
        ge=1,
        le=32,
        description="Number of connections per stream",
    )
    FETCH_BUFFER_SIZE: str = Field(
        default="1M",
        description="yt-dlp --buffer-size value (e.g., 64K, 1M)"
    )
    FETCH_PARALLEL_STREAMS: bool = Field(
        default=True,
        description="Fetch separate video and audio streams concurrently",
    )

    # Assembly policy
    FFMPEG_THREADS: int = Field(default=4, ge=1, le=64)
    FFMPEG_PRESET: str = "ultrafast"
    FFMPEG_AUDIO_BITRATE: str = "256k"
    FFMPEG_MAXRATE: str = "32M"
    FFMPEG_BUFSIZE: str = "32M"

    # Per-stage timeouts
    RESOLVE_TIMEOUT_SECONDS: float = Field(default=120, gt=0, le=3600)
    FETCH_TIMEOUT_SECONDS: float = Field(default=1800, gt=0, le=21600)
    ASSEMBLE_TIMEOUT_SECONDS: float = Field(default=900, gt=0, le=21600)

    # Streaming
    STREAM_CHUNK_SIZE: int = Field(
        default=2 * 1024 * 1024,
        ge=65536,
        le=67108864,
        description="Chunk size for StreamingResponse reads"
    )
    DISCONNECT_POLL_INTERVAL: float = Field(
        default=0.5,
        gt=0,
        le=10,
        description="Seconds between client-disconnect checks while a download is prepared",
    )

    # Cache metadata to avoid duplicate resolver calls between /video-info and /download
    METADATA_CACHE_TTL_SECONDS: int = Field(
        default=600,
        ge=0,
        le=3600,
        description="TTL for in-memory metadata cache (0 disables)"
    )
    METADATA_CACHE_MAXSIZE: int = Field(
        default=128,
        ge=0,
        le=2048,
        description="Max number of cached URLs (0 disables)"
    )

    # Progress reporting
    PROGRESS_INTERVAL_SECONDS: float = Field(default=1.0, gt=0, le=60)
    PROGRESS_RETENTION_SECONDS: int = Field(
        default=300,
        ge=1,
        le=86400,
        description="How long the last progress value stays readable after a job ends",
    )

    # History
    HISTORY_LIMIT: int = Field(default=10, ge=1, le=50)
    HISTORY_MAX_ENTRIES: int = Field(default=500, ge=1, le=100000)


# Global settings instance
settings = Settings()
