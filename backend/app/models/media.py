"""Pydantic models for media-related API contracts."""
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

VideoContainer = Literal["mp4", "webm"]
AudioCodec = Literal["mp3", "opus"]


class VideoTranscodeRequest(BaseModel):
    """Immutable description of one video re-encode."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1, max_length=2048)
    quality: str = Field(default="1080p", description="Quality tier, e.g. '720p'")
    container: str = Field(default="mp4", description="Output container (mp4, webm)")
    codec: str = Field(default="h264", description="Video codec (h264, vp9, av1)")
    job_id: str | None = Field(default=None, max_length=128)


class AudioTranscodeRequest(BaseModel):
    """Immutable description of one audio extraction."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1, max_length=2048)
    bitrate_kbps: int = Field(default=320, gt=0)
    codec: str = Field(default="mp3", description="Audio codec (mp3, opus)")
    job_id: str | None = Field(default=None, max_length=128)


class ProbeFormat(BaseModel):
    """Container-level metadata."""

    duration: float | None = Field(default=None, ge=0, description="Duration in seconds")
    bit_rate: int | None = Field(default=None, ge=0, description="Bits per second")


class ProbeStream(BaseModel):
    """A single elementary stream reported by the probe."""

    codec_type: str
    codec_name: str | None = None
    width: int | None = None
    height: int | None = None


class ProbeResult(BaseModel):
    """Metadata resolved for a source URL."""

    format: ProbeFormat = Field(default_factory=ProbeFormat)
    streams: list[ProbeStream] = Field(default_factory=list)
    title: str | None = None
    thumbnail: str | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "format": {"duration": 212.0, "bit_rate": 2500000},
                "streams": [
                    {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},
                    {"codec_type": "audio", "codec_name": "aac"},
                ],
                "title": "Example Video Title",
                "thumbnail": "https://example.com/thumb.jpg",
            }
        }
    )

    @property
    def duration_seconds(self) -> float | None:
        duration = self.format.duration
        return duration if duration and duration > 0 else None


class ErrorResponse(BaseModel):
    """Standard error response model."""

    code: Literal[
        "INVALID_URL",
        "HOST_NOT_ALLOWED",
        "UNSUPPORTED_FORMAT",
        "UNSUPPORTED_MEDIA_TYPE",
        "PAYLOAD_TOO_LARGE",
        "SOURCE_UNAVAILABLE",
        "SOURCE_UNREACHABLE",
        "UPSTREAM_ERROR",
        "PROBE_FAILED",
        "SPAWN_FAILED",
        "DOWNLOADER_FAILED",
        "ENCODER_FAILED",
        "INTERNAL_ERROR",
    ] = Field(
        ...,
        description="Stable error code for programmatic handling",
    )
    message: str = Field(
        ...,
        description="Human-readable error message",
        min_length=1,
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "code": "PAYLOAD_TOO_LARGE",
                "message": "Video too large.",
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
