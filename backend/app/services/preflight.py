"""Cheap checks that run before any transcode is admitted."""
from dataclasses import dataclass
from typing import Callable

from app.core.config import settings
from app.core.logging import get_logger
from app.models.media import ProbeResult
from app.services.errors import (
    PayloadTooLargeError,
    ProbeFailedError,
    SpawnError,
    UnsupportedMediaTypeError,
)
from app.services.probe import ProbeService
from app.services.source_resolver import HeadResult, SourceResolver
from app.services.validators import (
    is_likely_audio,
    is_likely_image,
    is_likely_video,
    is_video_host_url,
    sanitize_url_for_logging,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class MediaPlan:
    """What the download endpoints learned about a source before transcoding."""

    url: str
    via_downloader: bool
    duration: float | None
    title: str | None
    estimated_bytes: int | None


def estimate_hosted_size(probe: ProbeResult | None) -> int | None:
    """bit-rate x duration / 8, assuming ``FALLBACK_BIT_RATE`` when unknown."""
    if probe is None or not probe.duration_seconds:
        return None
    bit_rate = probe.format.bit_rate or settings.FALLBACK_BIT_RATE
    return int(bit_rate * probe.duration_seconds / 8)


def _is_video_or_audio(content_type: str | None) -> bool:
    return is_likely_video(content_type) or is_likely_audio(content_type)


async def check_image(resolver: SourceResolver, url: str) -> HeadResult:
    """HEAD an image URL and enforce type and ``MAX_IMAGE_MB``.

    Raises:
        UnsupportedMediaTypeError: Hosted-video URL, or not an image
        PayloadTooLargeError: Declared size above the ceiling
    """
    if is_video_host_url(url):
        raise UnsupportedMediaTypeError("Use the video endpoint for hosted videos.")
    head = await resolver.head(url)
    if head is None or not is_likely_image(head.content_type):
        raise UnsupportedMediaTypeError("Not an image URL.")
    if head.content_length and head.content_length > settings.max_image_bytes:
        raise PayloadTooLargeError("Image too large.")
    return head


async def plan_media(
    resolver: SourceResolver,
    prober: ProbeService,
    url: str,
    *,
    too_large_message: str,
    accepts: Callable[[str | None], bool] = _is_video_or_audio,
) -> MediaPlan:
    """Size/type pre-flight for the video and audio endpoints.

    Direct sources are checked with a HEAD request before the (more
    expensive) probe.  A probe that fails for any reason other than the
    media being unavailable only means the duration stays unknown.

    Raises:
        UnsupportedMediaTypeError: Direct source with a non-media content type
        PayloadTooLargeError: Source above ``MAX_VIDEO_MB``
        SourceUnavailableError: Hosted media is private or removed
    """
    via_downloader = is_video_host_url(url)
    size: int | None = None

    if not via_downloader:
        head = await resolver.head(url)
        if head is not None:
            if not accepts(head.content_type):
                raise UnsupportedMediaTypeError("Not a video/audio URL.")
            size = head.content_length
        if size and size > settings.max_video_bytes:
            raise PayloadTooLargeError(too_large_message)

    probe: ProbeResult | None
    try:
        probe = await prober.probe(url)
    except (ProbeFailedError, SpawnError) as e:
        logger.warning(
            f"Probe failed for {sanitize_url_for_logging(url)}, progress percent unavailable: {e.message}"
        )
        probe = None

    if via_downloader:
        size = estimate_hosted_size(probe)
        if size and size > settings.max_video_bytes:
            raise PayloadTooLargeError(too_large_message)

    return MediaPlan(
        url=url,
        via_downloader=via_downloader,
        duration=probe.duration_seconds if probe else None,
        title=probe.title if probe else None,
        estimated_bytes=size,
    )
