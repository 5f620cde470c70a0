"""ffmpeg orchestration.

``TranscodeOrchestrator.start_video`` / ``start_audio`` resolve the source,
spawn ffmpeg and return a running ``TranscodePipeline``:

    source bytes --feeder task--> ffmpeg stdin
    ffmpeg stdout --------------> TranscodePipeline.output()
    ffmpeg stderr --pump task---> progress parser --> on_event

Each pipeline moves through ``idle -> source-active -> transcoding`` and
ends in ``done`` or ``failed``.  Reaching a terminal state tears the whole
chain down (remaining processes killed, source closed, tasks cancelled), so
nothing outlives the response that consumed it.
"""
import asyncio
from collections import deque
from contextlib import suppress
from enum import Enum
from typing import AsyncIterator

from app.core.config import settings
from app.core.logging import get_logger
from app.models.media import AudioTranscodeRequest, VideoTranscodeRequest
from app.models.progress import Phase
from app.services.errors import EncoderFailedError
from app.services.presets import get_audio_preset, get_video_preset
from app.services.progress_parser import ProgressCallback, format_tail, pump_diagnostics
from app.services.source_resolver import ByteSource, SourceResolver
from app.services.subprocesses import spawn, terminate
from app.services.validators import audio_kbps_to_bitrate, quality_to_height, sanitize_url_for_logging

logger = get_logger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    SOURCE_ACTIVE = "source-active"
    TRANSCODING = "transcoding"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.SOURCE_ACTIVE, PipelineState.FAILED},
    PipelineState.SOURCE_ACTIVE: {PipelineState.TRANSCODING, PipelineState.FAILED},
    PipelineState.TRANSCODING: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}

TERMINAL_STATES = {PipelineState.DONE, PipelineState.FAILED}


class TranscodePipeline:
    """One ffmpeg process fed by one source."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        source: ByteSource,
        on_event: ProgressCallback | None,
        chunk_size: int,
        label: str = "transcode",
    ) -> None:
        self.process = process
        self.label = label
        self.state = PipelineState.IDLE
        self.failure: str | None = None
        self._source = source
        self._on_event = on_event
        self._chunk_size = chunk_size
        self._source_error: Exception | None = None
        self._tail: deque[str] = deque(maxlen=50)
        self._feeder: asyncio.Task[None] | None = None
        self._diagnostics: asyncio.Task[deque[str]] | None = None
        self._torn_down = False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        logger.debug(f"[{self.label}] {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _finish(self, failure: str | None) -> None:
        if self.state in TERMINAL_STATES:
            return
        if failure is None:
            if self.state is PipelineState.SOURCE_ACTIVE:
                self._transition(PipelineState.TRANSCODING)
            self._transition(PipelineState.DONE)
        else:
            self.failure = failure
            self._transition(PipelineState.FAILED)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Start feeding the source and pumping diagnostics."""
        assert self.process.stderr is not None
        self._transition(PipelineState.SOURCE_ACTIVE)
        self._diagnostics = asyncio.create_task(
            pump_diagnostics(self.process.stderr, Phase.TRANSCODING, self._on_event, self._tail)
        )
        self._feeder = asyncio.create_task(self._feed())

    async def _feed(self) -> None:
        stdin = self.process.stdin
        assert stdin is not None
        try:
            async for chunk in self._source.chunks():
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # ffmpeg stopped reading; its exit status tells what happened
            logger.debug(f"[{self.label}] transcoder closed its input early")
        except Exception as e:
            logger.warning(f"[{self.label}] source failed: {e}")
            self._source_error = e
        finally:
            # Close, never kill: ffmpeg still flushes what it already has
            await self._close_stdin()
            if self.state is PipelineState.SOURCE_ACTIVE:
                self._transition(PipelineState.TRANSCODING)

    async def _close_stdin(self) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            return
        stdin.close()
        with suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    async def output(self) -> AsyncIterator[bytes]:
        """Yield ffmpeg's stdout.

        Ends cleanly only when ffmpeg exits with status zero and the source
        was consumed without error; otherwise raises after the bytes already
        produced, so a truncated file is never presented as complete.

        Raises:
            EncoderFailedError: If ffmpeg exits non-zero
            MediaServiceError: The source's own error, if the source failed
        """
        stdout = self.process.stdout
        assert stdout is not None
        try:
            while True:
                chunk = await stdout.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk

            returncode = await self.process.wait()
            if self._feeder is not None:
                # ffmpeg is gone, so any remaining source bytes have nowhere to go
                if not self._feeder.done():
                    self._feeder.cancel()
                await asyncio.gather(self._feeder, return_exceptions=True)
            if self._diagnostics is not None:
                await asyncio.gather(self._diagnostics, return_exceptions=True)

            if self._source_error is not None:
                raise self._source_error
            if returncode != 0:
                message = f"ffmpeg exited with code {returncode}"
                if self._tail:
                    message = f"{message}: {format_tail(self._tail)}"
                raise EncoderFailedError(message)
            self._finish(None)
            logger.info(f"[{self.label}] finished")
        except Exception as e:
            self._finish(str(e))
            logger.error(f"[{self.label}] failed: {e}")
            raise
        finally:
            if not self.finished:
                self._finish("aborted")
                logger.info(f"[{self.label}] aborted by consumer")
            await self._teardown()

    async def abort(self) -> None:
        """Tear the pipeline down without consuming it."""
        self._finish("aborted")
        await self._teardown()

    async def _teardown(self) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        tasks = [t for t in (self._feeder, self._diagnostics) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        await terminate(self.process)
        await self._source.aclose()
        await asyncio.gather(*tasks, return_exceptions=True)


class TranscodeOrchestrator:
    """Builds transcode pipelines for video and audio requests."""

    def __init__(self, resolver: SourceResolver) -> None:
        self._resolver = resolver

    async def start_video(
        self,
        request: VideoTranscodeRequest,
        on_event: ProgressCallback | None = None,
    ) -> TranscodePipeline:
        """Re-encode *request.url* to the requested container/codec/height.

        Raises:
            UnsupportedFormatError: Before anything is spawned, for unknown pairs
            SpawnError, UpstreamError, SourceUnreachableError: From the source or ffmpeg
        """
        preset = get_video_preset(request.container, request.codec)
        height = quality_to_height(request.quality)
        args = preset.build_args(height)
        source = await self._resolver.resolve(
            request.url, height=height, audio_only=False, on_event=on_event
        )
        label = f"video {preset.container}/{preset.codec}@{height}p"
        return await self._launch(args, source, on_event, label, request.url)

    async def start_audio(
        self,
        request: AudioTranscodeRequest,
        on_event: ProgressCallback | None = None,
    ) -> TranscodePipeline:
        """Extract the audio track of *request.url*; video streams are dropped."""
        preset = get_audio_preset(request.codec)
        bitrate = audio_kbps_to_bitrate(request.bitrate_kbps)
        args = preset.build_args(bitrate)
        source = await self._resolver.resolve(
            request.url, height=None, audio_only=True, on_event=on_event
        )
        label = f"audio {preset.codec}@{bitrate}k"
        return await self._launch(args, source, on_event, label, request.url)

    async def _launch(
        self,
        args: list[str],
        source: ByteSource,
        on_event: ProgressCallback | None,
        label: str,
        url: str,
    ) -> TranscodePipeline:
        try:
            process = await spawn(settings.FFMPEG_BINARY, args, stdin=True)
        except BaseException:
            await source.aclose()
            raise
        logger.info(f"[{label}] started for {sanitize_url_for_logging(url)}")
        pipeline = TranscodePipeline(
            process, source, on_event, settings.STREAM_CHUNK_SIZE, label=label
        )
        pipeline.begin()
        return pipeline
