"""Resolution of a source URL into a readable byte stream.

Two flavours exist: a direct ``httpx`` GET for plain media URLs, and a
``yt-dlp`` subprocess writing the selected stream to its stdout for
video-hosting sites.  Both are exposed as a ``ByteSource``.
"""
import asyncio
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.models.progress import Phase
from app.services.errors import DownloaderFailedError, SourceUnreachableError, UpstreamError
from app.services.progress_parser import ProgressCallback, format_tail, pump_diagnostics
from app.services.subprocesses import spawn, terminate
from app.services.validators import is_video_host_url, sanitize_url_for_logging

logger = get_logger(__name__)


@dataclass(frozen=True)
class HeadResult:
    """Headers of interest from a HEAD request."""

    status: int
    content_type: str
    content_length: int | None


class ByteSource:
    """A one-shot stream of raw source bytes."""

    #: Set when the bytes come from a child process rather than a socket
    process: asyncio.subprocess.Process | None = None

    def chunks(self) -> AsyncIterator[bytes]:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release the underlying resource; safe to call more than once."""
        raise NotImplementedError


class HttpSource(ByteSource):
    """Body of a streamed ``httpx`` GET response."""

    def __init__(self, response: httpx.Response, chunk_size: int) -> None:
        self._response = response
        self._chunk_size = chunk_size

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes(self._chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise SourceUnreachableError(f"Source stream interrupted: {e}")

    async def aclose(self) -> None:
        await self._response.aclose()


class DownloaderSource(ByteSource):
    """stdout of a running yt-dlp process.

    stderr is pumped through the progress parser for as long as the process
    lives.  The byte stream ends only after stdout is fully drained and the
    process has exited; a non-zero exit then surfaces as
    ``DownloaderFailedError``.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_event: ProgressCallback | None,
        chunk_size: int,
    ) -> None:
        self.process = process
        self._chunk_size = chunk_size
        self._tail: deque[str] = deque(maxlen=50)
        assert process.stderr is not None
        self._diagnostics = asyncio.create_task(
            pump_diagnostics(process.stderr, Phase.DOWNLOADING_SOURCE, on_event, self._tail)
        )

    async def chunks(self) -> AsyncIterator[bytes]:
        process = self.process
        assert process is not None and process.stdout is not None
        while True:
            chunk = await process.stdout.read(self._chunk_size)
            if not chunk:
                break
            yield chunk
        returncode = await process.wait()
        await self._diagnostics
        if returncode != 0:
            message = f"yt-dlp exited with code {returncode}"
            if self._tail:
                message = f"{message}: {format_tail(self._tail)}"
            raise DownloaderFailedError(message)

    async def aclose(self) -> None:
        if self.process is not None:
            await terminate(self.process)
        if not self._diagnostics.done():
            self._diagnostics.cancel()
            await asyncio.gather(self._diagnostics, return_exceptions=True)


class SourceResolver:
    """Turns a source URL into a ``ByteSource``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def head(self, url: str) -> HeadResult | None:
        """Issue a HEAD request.

        Returns:
            The interesting headers, or None when the server refuses HEAD

        Raises:
            UpstreamError: If the server answers with an error status
            SourceUnreachableError: If the request fails at transport level
        """
        try:
            response = await self._client.head(url)
        except httpx.HTTPError as e:
            raise SourceUnreachableError(f"Source could not be reached: {e}")

        if response.status_code in (405, 501):
            logger.info(f"HEAD not supported by {sanitize_url_for_logging(url)}")
            return None
        if response.status_code >= 400:
            raise UpstreamError(f"Upstream returned {response.status_code}")

        length_header = response.headers.get("content-length")
        try:
            length = int(length_header) if length_header else None
        except ValueError:
            length = None
        return HeadResult(
            status=response.status_code,
            content_type=response.headers.get("content-type", "").lower(),
            content_length=length,
        )

    async def open_direct(self, url: str) -> HttpSource:
        """Start a streaming GET.

        Raises:
            UpstreamError: If the server answers with status >= 400
            SourceUnreachableError: If the request fails at transport level
        """
        request = self._client.build_request("GET", url)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise SourceUnreachableError(f"Source could not be reached: {e}")

        if response.status_code >= 400:
            await response.aclose()
            raise UpstreamError(f"Upstream returned {response.status_code}")
        return HttpSource(response, settings.STREAM_CHUNK_SIZE)

    async def open_downloader(
        self,
        url: str,
        *,
        height: int | None,
        audio_only: bool,
        on_event: ProgressCallback | None,
    ) -> DownloaderSource:
        """Spawn yt-dlp for *url*.

        Raises:
            SpawnError: If yt-dlp cannot be started
        """
        cmd = build_downloader_command(url, height=height, audio_only=audio_only)
        logger.info(f"Starting yt-dlp for {sanitize_url_for_logging(url)}")
        process = await spawn(settings.YTDLP_BINARY, cmd)
        return DownloaderSource(process, on_event, settings.STREAM_CHUNK_SIZE)

    async def resolve(
        self,
        url: str,
        *,
        height: int | None = None,
        audio_only: bool = False,
        on_event: ProgressCallback | None = None,
    ) -> ByteSource:
        """Open the byte stream for *url*, picking the strategy by hostname."""
        if is_video_host_url(url):
            return await self.open_downloader(
                url, height=height, audio_only=audio_only, on_event=on_event
            )
        return await self.open_direct(url)


def build_downloader_command(url: str, *, height: int | None, audio_only: bool) -> list[str]:
    """Build yt-dlp arguments that write the selected stream to stdout."""
    if audio_only:
        format_spec = "bestaudio[ext=m4a]/bestaudio/best"
    elif height:
        format_spec = f"bestvideo[height<={height}]+bestaudio/best[height<={height}]"
    else:
        format_spec = "bestvideo+bestaudio/best"

    cmd: list[str] = [
        "-f", format_spec,
        "-o", "-",  # Output to stdout
        "--newline",  # one progress line per update
        "--progress",  # force progress even when not a TTY
        "--no-warnings",
        "--no-playlist",
        "--concurrent-fragments", str(settings.YTDLP_CONCURRENT_FRAGMENTS),
        "--socket-timeout", str(settings.YTDLP_SOCKET_TIMEOUT),
        "--retries", str(settings.YTDLP_RETRIES),
        "--fragment-retries", str(settings.YTDLP_FRAGMENT_RETRIES),
    ]

    if settings.YTDLP_COOKIES_FILE:
        cmd.extend(["--cookies", settings.YTDLP_COOKIES_FILE])
    if settings.YTDLP_COOKIES_FROM_BROWSER:
        cmd.extend(["--cookies-from-browser", settings.YTDLP_COOKIES_FROM_BROWSER])
    if settings.YTDLP_USER_AGENT:
        cmd.extend(["--user-agent", settings.YTDLP_USER_AGENT])
    if settings.YTDLP_PROXY:
        cmd.extend(["--proxy", settings.YTDLP_PROXY])

    cmd.extend(["--", url])
    return cmd
