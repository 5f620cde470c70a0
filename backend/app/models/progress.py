"""Progress telemetry models.

A ``ProgressEvent`` is a tagged union discriminated by ``phase``: each phase
carries only the fields its producer can actually report.  The SSE stream
names its events ``snapshot``, ``update`` and ``done``; their payloads are
``ProgressSnapshot``, ``ProgressEvent`` and ``ProgressDone`` respectively.
"""
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Phase(str, Enum):
    """Coarse stage of a job."""

    QUEUED = "queued"
    DOWNLOADING_SOURCE = "downloading-source"
    TRANSCODING = "transcoding"


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    percent: int | None = Field(default=None, ge=0, le=100)


class QueuedEvent(_EventBase):
    """Waiting for an admission slot."""

    phase: Literal["queued"] = "queued"


class SourceDownloadEvent(_EventBase):
    """yt-dlp is fetching source bytes; ``percent`` is its own estimate."""

    phase: Literal["downloading-source"] = "downloading-source"


class TranscodingEvent(_EventBase):
    """ffmpeg stats line."""

    phase: Literal["transcoding"] = "transcoding"
    position_seconds: float | None = Field(default=None, ge=0)
    fps: float | None = None
    speed: float | None = Field(default=None, description="Realtime multiplier, e.g. 1.1")
    bitrate: str | None = Field(default=None, description="As printed by ffmpeg, e.g. '2000.0kbits/s'")


ProgressEvent = Annotated[
    Union[QueuedEvent, SourceDownloadEvent, TranscodingEvent],
    Field(discriminator="phase"),
]

progress_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


class ProgressSnapshot(BaseModel):
    """Current known state, sent first to every new subscriber."""

    duration: float | None = None
    position_seconds: float = 0.0
    percent: int | None = None
    phase: Phase | None = None
    done: bool = False
    failed: bool = False


class ProgressDone(BaseModel):
    """Terminal event of a job."""

    ok: bool
    error: str | None = None
    percent: int | None = None


SseEventName = Literal["snapshot", "update", "done"]
