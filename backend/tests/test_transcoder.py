"""Tests for the ffmpeg pipeline and orchestrator."""
import asyncio
from typing import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.core.config import settings
from app.models.media import AudioTranscodeRequest, VideoTranscodeRequest
from app.models.progress import SourceDownloadEvent, TranscodingEvent
from app.services.errors import (
    DownloaderFailedError,
    EncoderFailedError,
    SourceUnreachableError,
    SpawnError,
    UnsupportedFormatError,
)
from app.services.source_resolver import ByteSource, SourceResolver
from app.services.subprocesses import spawn
from app.services.transcoder import PipelineState, TranscodeOrchestrator, TranscodePipeline

CLIP_URL = "https://media.example.com/clip.mp4"
HOSTED_URL = "https://www.youtube.com/watch?v=test"

FFMPEG_HANG = """
import sys, time
sys.stdin.buffer.read()
time.sleep(60)
"""


class ListSource(ByteSource):
    """Yields fixed chunks, optionally failing afterwards."""

    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error
        self.closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


async def _start(source: ByteSource, on_event=None) -> TranscodePipeline:
    process = await spawn(settings.FFMPEG_BINARY, [], stdin=True)
    pipeline = TranscodePipeline(process, source, on_event, settings.STREAM_CHUNK_SIZE)
    pipeline.begin()
    return pipeline


async def _consume(pipeline: TranscodePipeline) -> bytes:
    return b"".join([chunk async for chunk in pipeline.output()])


class TestPipeline:
    """Tests for a single pipeline's lifecycle."""

    async def test_success(self, ffmpeg_ok: str) -> None:
        events: list = []
        source = ListSource([b"abc", b"def"])
        pipeline = await _start(source, events.append)
        assert pipeline.state is PipelineState.SOURCE_ACTIVE

        assert await _consume(pipeline) == b"ENC:abcdef"

        assert pipeline.state is PipelineState.DONE
        assert pipeline.failure is None
        assert source.closed
        assert pipeline.process.returncode == 0
        assert events == [
            TranscodingEvent(position_seconds=5.0, fps=25.0, speed=1.0, bitrate="419.4kbits/s")
        ]

    async def test_encoder_failure(self, ffmpeg_fail: str) -> None:
        source = ListSource([b"garbage"])
        pipeline = await _start(source)

        with pytest.raises(EncoderFailedError, match="Invalid data found"):
            await _consume(pipeline)

        assert pipeline.state is PipelineState.FAILED
        assert "ffmpeg exited with code 1" in pipeline.failure
        assert source.closed

    async def test_source_failure_fails_pipeline(self, ffmpeg_ok: str) -> None:
        source = ListSource([b"partial"], error=SourceUnreachableError("connection reset"))
        pipeline = await _start(source)

        with pytest.raises(SourceUnreachableError):
            await _consume(pipeline)

        # ffmpeg itself exited cleanly, but the output is incomplete
        assert pipeline.process.returncode == 0
        assert pipeline.state is PipelineState.FAILED
        assert pipeline.failure == "connection reset"

    async def test_abort_kills_process(self, fake_binary, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "FFMPEG_BINARY", fake_binary("ffmpeg-hang", FFMPEG_HANG))
        source = ListSource([b"abc"])
        pipeline = await _start(source)
        await asyncio.sleep(0.1)

        await pipeline.abort()

        assert pipeline.process.returncode is not None
        assert pipeline.state is PipelineState.FAILED
        assert pipeline.failure == "aborted"
        assert source.closed

    async def test_consumer_walks_away(self, fake_binary, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "FFMPEG_BINARY", fake_binary("ffmpeg-hang", FFMPEG_HANG))
        pipeline = await _start(ListSource([b"abc"]))
        output = pipeline.output()

        consumer = asyncio.create_task(output.__anext__())
        await asyncio.sleep(0.1)
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        assert pipeline.finished
        assert pipeline.process.returncode is not None

    async def test_abort_is_idempotent(self, ffmpeg_ok: str) -> None:
        pipeline = await _start(ListSource([b"x"]))
        assert await _consume(pipeline) == b"ENC:x"

        await pipeline.abort()

        assert pipeline.state is PipelineState.DONE


def _resolver_returning(source: ByteSource) -> MagicMock:
    resolver = MagicMock()
    resolver.resolve = AsyncMock(return_value=source)
    return resolver


class TestOrchestrator:
    """Tests for request-to-pipeline wiring."""

    async def test_unsupported_combination_spawns_nothing(self) -> None:
        resolver = _resolver_returning(ListSource([]))
        orchestrator = TranscodeOrchestrator(resolver)

        with pytest.raises(UnsupportedFormatError):
            await orchestrator.start_video(
                VideoTranscodeRequest(url=CLIP_URL, container="mp4", codec="av1")
            )

        resolver.resolve.assert_not_awaited()

    async def test_video_resolves_with_height(self, ffmpeg_ok: str) -> None:
        resolver = _resolver_returning(ListSource([b"v"]))
        orchestrator = TranscodeOrchestrator(resolver)

        pipeline = await orchestrator.start_video(
            VideoTranscodeRequest(url=CLIP_URL, quality="480p", container="webm", codec="vp9")
        )

        assert await _consume(pipeline) == b"ENC:v"
        resolver.resolve.assert_awaited_once_with(
            CLIP_URL, height=480, audio_only=False, on_event=None
        )

    async def test_audio_resolves_audio_only(self, ffmpeg_args: str) -> None:
        resolver = _resolver_returning(ListSource([b"a"]))
        orchestrator = TranscodeOrchestrator(resolver)

        pipeline = await orchestrator.start_audio(
            AudioTranscodeRequest(url=CLIP_URL, bitrate_kbps=160, codec="opus")
        )
        args = (await _consume(pipeline)).decode()

        assert "-b:a 160k" in args
        assert "libopus" in args
        assert resolver.resolve.await_args.kwargs["audio_only"] is True

    async def test_spawn_failure_closes_source(
        self, missing_binary: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(settings, "FFMPEG_BINARY", missing_binary)
        source = ListSource([b"x"])
        orchestrator = TranscodeOrchestrator(_resolver_returning(source))

        with pytest.raises(SpawnError):
            await orchestrator.start_audio(AudioTranscodeRequest(url=CLIP_URL))

        assert source.closed


@pytest.fixture
async def hosted_orchestrator() -> AsyncIterator[TranscodeOrchestrator]:
    # Hosted URLs never reach the HTTP client
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
        yield TranscodeOrchestrator(SourceResolver(client))


class TestDownloaderFedPipeline:
    """yt-dlp stdout piped into ffmpeg."""

    async def test_full_stream_reaches_output(
        self, hosted_orchestrator: TranscodeOrchestrator, ytdlp_ok: str, ffmpeg_ok: str
    ) -> None:
        events: list = []

        pipeline = await hosted_orchestrator.start_video(
            VideoTranscodeRequest(url=HOSTED_URL, quality="720p"), events.append
        )

        # ffmpeg echoes its stdin only after EOF, so every downloader byte arrived first
        assert await _consume(pipeline) == b"ENC:SOURCE-BYTES"
        assert pipeline.state is PipelineState.DONE
        assert SourceDownloadEvent(percent=25) in events
        assert SourceDownloadEvent(percent=100) in events
        assert any(isinstance(event, TranscodingEvent) for event in events)

    async def test_downloader_exit_fails_output(
        self, hosted_orchestrator: TranscodeOrchestrator, ytdlp_fail: str, ffmpeg_ok: str
    ) -> None:
        pipeline = await hosted_orchestrator.start_video(VideoTranscodeRequest(url=HOSTED_URL))

        with pytest.raises(DownloaderFailedError, match="Requested format is not available"):
            await _consume(pipeline)

        # ffmpeg saw a clean EOF and exited zero; the downloader's exit still wins
        assert pipeline.process.returncode == 0
        assert pipeline.state is PipelineState.FAILED
        assert "yt-dlp exited with code 1" in pipeline.failure
