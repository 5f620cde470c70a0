"""Application configuration using pydantic-settings."""
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


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
    PORT: int = Field(default=5050, ge=1, le=65535)

    # API Configuration
    API_V1_PREFIX: str = "/api/v1"

    # CORS Configuration
    CORS_ORIGINS: str = Field(
        default="http://localhost:3000",
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
    ALLOWED_HOSTS: str = Field(
        default="",
        description="Comma-separated host allow-list (empty allows every host)",
    )
    VIDEO_HOST_MARKERS: str = Field(
        default="youtube,youtu.be",
        description="Hostname fragments that route a URL through yt-dlp",
    )

    # Size ceilings
    MAX_IMAGE_MB: int = Field(default=100, ge=1)
    MAX_VIDEO_MB: int = Field(default=2048, ge=1)
    FALLBACK_BIT_RATE: int = Field(
        default=2_500_000,
        ge=1,
        description="Bits per second assumed when a hosted video reports no bit-rate",
    )

    # Transcode pipeline
    MAX_CONCURRENT_TRANSCODES: int = Field(default=4, ge=1, le=64)
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"
    STREAM_CHUNK_SIZE: int = Field(
        default=65536,
        ge=1024,
        le=16777216,
        description="Chunk size for subprocess pipes and StreamingResponse bodies",
    )

    # Progress tracking
    JOB_RETENTION_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="How long a finished job stays visible to reconnecting subscribers",
    )
    JOB_SWEEP_INTERVAL_SECONDS: float = Field(default=15.0, gt=0)
    SUBSCRIBER_QUEUE_SIZE: int = Field(default=64, ge=2, le=4096)
    SSE_PING_SECONDS: int = Field(default=15, ge=1)

    # Direct HTTP sources
    HTTP_USER_AGENT: str = "MediaDownloader/1.0"
    HTTP_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)

    # Metadata probing
    PROBE_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    PROBE_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    PROBE_RETRY_WAIT_SECONDS: float = Field(
        default=1.0,
        ge=0,
        description="Base delay of the exponential probe backoff (capped at 8x)",
    )
    PROBE_CACHE_TTL_SECONDS: int = Field(
        default=600,
        ge=0,
        le=3600,
        description="TTL for in-memory probe cache (0 disables)",
    )
    PROBE_CACHE_MAXSIZE: int = Field(
        default=128,
        ge=0,
        le=2048,
        description="Max number of cached URLs (0 disables)",
    )

    # yt-dlp tuning
    YTDLP_BINARY: str = "yt-dlp"
    YTDLP_COOKIES_FILE: str | None = Field(
        default=None,
        description="Netscape cookie file passed to yt-dlp via --cookies",
    )
    YTDLP_COOKIES_FROM_BROWSER: str | None = Field(
        default=None,
        description="Browser to extract cookies from (chrome, firefox, edge, etc.)",
    )
    YTDLP_CONCURRENT_FRAGMENTS: int = Field(
        default=8,
        ge=1,
        le=32,
        description="Number of fragments to download in parallel (DASH/HLS)",
    )
    YTDLP_SOCKET_TIMEOUT: int = Field(
        default=30,
        ge=1,
        le=300,
        description="yt-dlp --socket-timeout value in seconds",
    )
    YTDLP_RETRIES: int = Field(default=10, ge=0, le=50)
    YTDLP_FRAGMENT_RETRIES: int = Field(default=10, ge=0, le=50)
    YTDLP_USER_AGENT: str | None = Field(
        default=None,
        description="Custom user agent string to avoid detection",
    )
    YTDLP_PROXY: str | None = Field(
        default=None,
        description="HTTP/HTTPS/SOCKS proxy URL (e.g., http://proxy:8080)",
    )

    @field_validator("CORS_ORIGINS", "ALLOWED_HOSTS", "VIDEO_HOST_MARKERS")
    @classmethod
    def strip_csv(cls, v: str) -> str:
        """Ensure comma-separated settings carry no surrounding whitespace."""
        return v.strip()

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return _split_csv(self.CORS_ORIGINS)

    @property
    def allowed_schemes_list(self) -> list[str]:
        """Get allowed URL schemes as a list."""
        return [scheme.lower() for scheme in _split_csv(self.ALLOWED_URL_SCHEMES)]

    @property
    def allowed_hosts_list(self) -> list[str]:
        """Get the host allow-list (lower-cased)."""
        return [host.lower() for host in _split_csv(self.ALLOWED_HOSTS)]

    @property
    def video_host_markers_list(self) -> list[str]:
        """Get hostname fragments that identify video-hosting sites."""
        return [marker.lower() for marker in _split_csv(self.VIDEO_HOST_MARKERS)]

    @property
    def max_image_bytes(self) -> int:
        return self.MAX_IMAGE_MB * 1024 * 1024

    @property
    def max_video_bytes(self) -> int:
        return self.MAX_VIDEO_MB * 1024 * 1024

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENV == "production"


# Global settings instance
settings = Settings()
