"""Metadata and download endpoints."""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, Query

from app.api.deps import MediaServices, get_services
from app.api.responses import ManagedStreamingResponse, build_content_disposition
from app.core.logging import get_logger
from app.models.media import AudioTranscodeRequest, ProbeResult, VideoTranscodeRequest
from app.models.progress import ProgressEvent, QueuedEvent
from app.services.errors import MediaServiceError
from app.services.job_registry import JobRegistry
from app.services.preflight import check_image, plan_media
from app.services.presets import default_video_codec, get_audio_preset, get_video_preset
from app.services.progress_parser import ProgressCallback
from app.services.transcoder import PipelineState, TranscodePipeline
from app.services.validators import (
    audio_kbps_to_bitrate,
    image_extension,
    normalize_url,
    sanitize_url_for_logging,
)

logger = get_logger(__name__)

router = APIRouter()

_ERROR_RESPONSES = {
    400: {"description": "Invalid URL or unsupported format"},
    403: {"description": "Host not allowed"},
    404: {"description": "Source unavailable"},
    413: {"description": "Source too large"},
    415: {"description": "Unsupported media type"},
    502: {"description": "Upstream, probe, downloader or encoder failure"},
    503: {"description": "Media helper binary could not be started"},
}

UrlQuery = Query(..., description="Source URL", min_length=1, max_length=2048)
JobIdQuery = Query(None, alias="jobId", description="Client-generated progress token", max_length=128)


def _progress_callback(registry: JobRegistry, job_id: str | None) -> ProgressCallback | None:
    if not job_id:
        return None

    def on_event(event: ProgressEvent) -> None:
        registry.update(job_id, event=event)

    return on_event


def _failure_message(error: BaseException) -> str:
    if isinstance(error, MediaServiceError):
        return error.message
    if isinstance(error, asyncio.CancelledError):
        return "Request cancelled"
    return "Unexpected error"


@asynccontextmanager
async def _job_scope(registry: JobRegistry, job_id: str | None) -> AsyncIterator[None]:
    """Claim *job_id* for a download and fail it if the request dies before streaming.

    Once a response is returned the stream's own close hook records the outcome.
    """
    if job_id:
        registry.start(job_id)
    try:
        yield
    except BaseException as e:
        if job_id:
            registry.mark_done(job_id, ok=False, error=_failure_message(e))
        raise


async def _stream_transcode(
    services: MediaServices,
    job_id: str | None,
    start: Callable[[ProgressCallback | None], Awaitable[TranscodePipeline]],
    *,
    media_type: str,
    filename: str,
) -> ManagedStreamingResponse:
    """Admit, start and stream one transcode.

    Failures up to and including process start become JSON errors.  After
    that the status line is already sent, so a failure can only abort the
    body and mark the job failed.
    """
    registry = services.registry
    on_event = _progress_callback(registry, job_id)
    stack = AsyncExitStack()
    try:
        if job_id and services.admission.saturated:
            registry.update(job_id, event=QueuedEvent())
        await stack.enter_async_context(services.admission.slot())
        pipeline = await start(on_event)
        stack.push_async_callback(pipeline.abort)
    except BaseException:
        await stack.aclose()
        raise

    async def on_close() -> None:
        await stack.aclose()
        if job_id:
            registry.mark_done(
                job_id,
                ok=pipeline.state is PipelineState.DONE,
                error=pipeline.failure,
            )

    return ManagedStreamingResponse(
        pipeline.output(),
        on_close=on_close,
        media_type=media_type,
        headers={"Content-Disposition": build_content_disposition(filename)},
    )


@router.get(
    "/probe",
    response_model=ProbeResult,
    summary="Probe source metadata",
    description="Resolve duration, bit-rate, streams, title and thumbnail for a URL",
    responses=_ERROR_RESPONSES,
)
async def probe_media(
    url: str = UrlQuery,
    services: MediaServices = Depends(get_services),
) -> ProbeResult:
    url = normalize_url(url)
    return await services.prober.probe(url)


@router.get(
    "/image",
    summary="Download image",
    description="Stream an image unmodified, after a type and size check",
    responses={200: {"description": "Original image bytes"}, **_ERROR_RESPONSES},
)
async def download_image(
    url: str = UrlQuery,
    services: MediaServices = Depends(get_services),
) -> ManagedStreamingResponse:
    """Pass an image through untouched; no subprocess is involved."""
    url = normalize_url(url)
    head = await check_image(services.resolver, url)
    source = await services.resolver.open_direct(url)
    content_type = head.content_type or "application/octet-stream"
    logger.info(f"Streaming image {sanitize_url_for_logging(url)} ({content_type})")

    return ManagedStreamingResponse(
        source.chunks(),
        on_close=source.aclose,
        media_type=content_type,
        headers={
            "Content-Disposition": build_content_disposition(f"image{image_extension(content_type)}")
        },
    )


@router.get(
    "/video",
    summary="Download video",
    description="Re-encode a video to the requested container, codec and height",
    responses={200: {"description": "Transcoded video stream"}, **_ERROR_RESPONSES},
)
async def download_video(
    url: str = UrlQuery,
    quality: str = Query("1080p", description="Quality tier (2160p ... 360p); unknown tiers mean 1080p"),
    container: str = Query("mp4", alias="format", description="Output container (mp4, webm)"),
    vcodec: str | None = Query(None, description="Video codec (h264, vp9, av1)"),
    job_id: str | None = JobIdQuery,
    services: MediaServices = Depends(get_services),
) -> ManagedStreamingResponse:
    async with _job_scope(services.registry, job_id):
        url = normalize_url(url)
        preset = get_video_preset(container, vcodec or default_video_codec(container))
        request = VideoTranscodeRequest(
            url=url,
            quality=quality,
            container=preset.container,
            codec=preset.codec,
            job_id=job_id,
        )

        plan = await plan_media(
            services.resolver, services.prober, url, too_large_message="Video too large."
        )
        if job_id:
            services.registry.update(job_id, duration=plan.duration)

        return await _stream_transcode(
            services,
            job_id,
            lambda on_event: services.orchestrator.start_video(request, on_event),
            media_type=preset.content_type,
            filename=f"{plan.title or 'video'}_{quality}.{preset.extension}",
        )


@router.get(
    "/audio",
    summary="Extract audio",
    description="Extract the audio track at the requested codec and bitrate",
    responses={200: {"description": "Audio stream"}, **_ERROR_RESPONSES},
)
async def download_audio(
    url: str = UrlQuery,
    kbps: str = Query("320", description="Bitrate in kbps (512, 320, 256, 192, 160, 128)"),
    codec: str = Query("mp3", description="Audio codec (mp3, opus)"),
    job_id: str | None = JobIdQuery,
    services: MediaServices = Depends(get_services),
) -> ManagedStreamingResponse:
    async with _job_scope(services.registry, job_id):
        url = normalize_url(url)
        preset = get_audio_preset(codec)
        bitrate = audio_kbps_to_bitrate(kbps)
        request = AudioTranscodeRequest(
            url=url, bitrate_kbps=bitrate, codec=preset.codec, job_id=job_id
        )

        plan = await plan_media(
            services.resolver, services.prober, url, too_large_message="Source too large."
        )
        if job_id:
            services.registry.update(job_id, duration=plan.duration)

        return await _stream_transcode(
            services,
            job_id,
            lambda on_event: services.orchestrator.start_audio(request, on_event),
            media_type=preset.content_type,
            filename=f"{plan.title or 'audio'}_{bitrate}k.{preset.extension}",
        )
