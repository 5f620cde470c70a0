"""Metadata probing (duration, bit-rate, title, thumbnail).

Video-hosting URLs go through the ``yt_dlp`` library, everything else
through ``ffprobe``.  Transient failures are retried with a bounded
exponential backoff; results are cached briefly so that the metadata
request and the download that usually follows share one probe.
"""
import asyncio
import json
import threading
from typing import Any

import yt_dlp
from cachetools import TTLCache
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.logging import get_logger
from app.models.media import ProbeFormat, ProbeResult, ProbeStream
from app.services.errors import ProbeFailedError, SourceUnavailableError
from app.services.subprocesses import spawn, terminate
from app.services.validators import is_video_host_url, sanitize_url_for_logging

logger = get_logger(__name__)

CODEC_NONE = "none"

_UNAVAILABLE_MARKERS = ("private", "unavailable", "removed", "not found", "does not exist", "404")
_BOT_MARKERS = ("sign in to confirm", "not a bot")


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProbeFailedError) and error.retryable


class ProbeService:
    """Resolves source metadata with a bounded retry policy and a TTL cache."""

    def __init__(self) -> None:
        self._cache: TTLCache | None = None
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cache helpers (backed by cachetools.TTLCache)
    # ------------------------------------------------------------------

    @staticmethod
    def _cache_enabled() -> bool:
        return settings.PROBE_CACHE_TTL_SECONDS > 0 and settings.PROBE_CACHE_MAXSIZE > 0

    def _get_cache(self) -> TTLCache:
        if self._cache is None:
            self._cache = TTLCache(
                maxsize=max(1, settings.PROBE_CACHE_MAXSIZE),
                ttl=max(1, settings.PROBE_CACHE_TTL_SECONDS),
            )
        return self._cache

    def get_cached(self, url: str) -> ProbeResult | None:
        if not self._cache_enabled():
            return None
        with self._cache_lock:
            return self._get_cache().get(url)

    def _cache_set(self, url: str, result: ProbeResult) -> None:
        if not self._cache_enabled():
            return
        with self._cache_lock:
            self._get_cache()[url] = result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def probe(self, url: str) -> ProbeResult:
        """Resolve metadata for *url*.

        Retry policy: up to ``PROBE_MAX_ATTEMPTS`` attempts, waiting
        ``PROBE_RETRY_WAIT_SECONDS * 2**n`` (capped at 8x) between them, and
        only for failures marked retryable.

        Raises:
            SourceUnavailableError: Media is private/removed (never retried)
            ProbeFailedError: Every attempt failed, or a non-retryable failure
        """
        cached = self.get_cached(url)
        if cached is not None:
            return cached

        safe_url = sanitize_url_for_logging(url)
        base_wait = settings.PROBE_RETRY_WAIT_SECONDS
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(settings.PROBE_MAX_ATTEMPTS),
            wait=wait_exponential(multiplier=base_wait, min=base_wait, max=base_wait * 8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    logger.info(f"[probe] Retrying {safe_url} (attempt {number})")
                result = await self._probe_once(url)

        self._cache_set(url, result)
        logger.info(f"[probe] {safe_url}: duration={result.format.duration} title={result.title!r}")
        return result

    async def _probe_once(self, url: str) -> ProbeResult:
        if is_video_host_url(url):
            info = await asyncio.to_thread(self._extract_info, url)
            return self.result_from_ytdlp(info)
        return await self._run_ffprobe(url)

    # ------------------------------------------------------------------
    # yt-dlp
    # ------------------------------------------------------------------

    @staticmethod
    def _build_ydl_options() -> dict[str, Any]:
        """Build yt-dlp configuration options for metadata extraction."""
        ydl_opts: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "socket_timeout": settings.YTDLP_SOCKET_TIMEOUT,
        }
        if settings.YTDLP_COOKIES_FILE:
            ydl_opts["cookiefile"] = settings.YTDLP_COOKIES_FILE
        if settings.YTDLP_COOKIES_FROM_BROWSER:
            ydl_opts["cookiesfrombrowser"] = (settings.YTDLP_COOKIES_FROM_BROWSER,)
        if settings.YTDLP_USER_AGENT:
            ydl_opts["http_headers"] = {"User-Agent": settings.YTDLP_USER_AGENT}
        if settings.YTDLP_PROXY:
            ydl_opts["proxy"] = settings.YTDLP_PROXY
        return ydl_opts

    @classmethod
    def _extract_info(cls, url: str) -> dict[str, Any]:
        """Blocking yt-dlp call; run it in a worker thread."""
        try:
            with yt_dlp.YoutubeDL(cls._build_ydl_options()) as ydl:
                info = ydl.extract_info(url, download=False)
        except yt_dlp.utils.DownloadError as e:
            message = str(e)
            lowered = message.lower()
            if any(marker in lowered for marker in _BOT_MARKERS):
                raise ProbeFailedError(
                    "Bot detection triggered by the video host. Refresh the cookies and retry.",
                    retryable=False,
                )
            if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
                raise SourceUnavailableError("Video is private, removed or unavailable")
            raise ProbeFailedError(f"yt-dlp could not read the video: {message}")
        except yt_dlp.utils.YoutubeDLError as e:
            raise ProbeFailedError(f"yt-dlp failed: {e}")
        except Exception as e:
            logger.error(f"[probe] Unexpected yt-dlp error: {e}", exc_info=True)
            raise ProbeFailedError(f"Unexpected error: {e}")

        if not info:
            raise SourceUnavailableError()
        return info

    @staticmethod
    def result_from_ytdlp(info: dict[str, Any]) -> ProbeResult:
        """Map a yt-dlp info dict onto ``ProbeResult``."""
        raw_duration = info.get("duration")
        duration = float(raw_duration) if isinstance(raw_duration, (int, float)) else None

        bit_rate: int | None = None
        if isinstance(info.get("tbr"), (int, float)):
            bit_rate = int(info["tbr"] * 1000)
        elif info.get("filesize_approx") and duration:
            bit_rate = int(info["filesize_approx"] * 8 / duration)

        formats = info.get("formats") or []
        chosen = next(
            (
                f for f in formats
                if f.get("vcodec", CODEC_NONE) != CODEC_NONE and f.get("acodec", CODEC_NONE) != CODEC_NONE
            ),
            formats[0] if formats else info,
        )
        streams: list[ProbeStream] = []
        if chosen.get("vcodec", CODEC_NONE) != CODEC_NONE:
            streams.append(ProbeStream(
                codec_type="video",
                codec_name=chosen.get("vcodec"),
                width=chosen.get("width"),
                height=chosen.get("height"),
            ))
        if chosen.get("acodec", CODEC_NONE) != CODEC_NONE:
            streams.append(ProbeStream(codec_type="audio", codec_name=chosen.get("acodec")))

        return ProbeResult(
            format=ProbeFormat(duration=duration, bit_rate=bit_rate),
            streams=streams,
            title=info.get("title"),
            thumbnail=info.get("thumbnail"),
        )

    # ------------------------------------------------------------------
    # ffprobe
    # ------------------------------------------------------------------

    async def _run_ffprobe(self, url: str) -> ProbeResult:
        args = [
            "-v", "error",
            "-show_entries", "format=duration,bit_rate:stream=codec_name,codec_type,width,height",
            "-of", "json",
            url,
        ]
        process = await spawn(settings.FFPROBE_BINARY, args)
        try:
            out, err = await asyncio.wait_for(
                process.communicate(), timeout=settings.PROBE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            await terminate(process)
            raise ProbeFailedError(f"ffprobe timed out after {settings.PROBE_TIMEOUT_SECONDS:.0f}s")

        if process.returncode != 0:
            message = err.decode(errors="replace").strip() or f"ffprobe exited with {process.returncode}"
            if any(marker in message.lower() for marker in _UNAVAILABLE_MARKERS):
                raise SourceUnavailableError(message[:200])
            raise ProbeFailedError(message[:200])

        try:
            return self.result_from_ffprobe(json.loads(out))
        except (ValueError, TypeError) as e:
            raise ProbeFailedError(f"Could not parse ffprobe output: {e}")

    @staticmethod
    def result_from_ffprobe(data: dict[str, Any]) -> ProbeResult:
        """Map ffprobe's JSON (numbers arrive as strings) onto ``ProbeResult``."""
        fmt = data.get("format") or {}

        def _number(value: Any, kind: type) -> Any:
            try:
                return kind(float(value)) if value not in (None, "", "N/A") else None
            except (TypeError, ValueError):
                return None

        streams = [
            ProbeStream(
                codec_type=s.get("codec_type", "unknown"),
                codec_name=s.get("codec_name"),
                width=_number(s.get("width"), int),
                height=_number(s.get("height"), int),
            )
            for s in data.get("streams") or []
        ]
        return ProbeResult(
            format=ProbeFormat(
                duration=_number(fmt.get("duration"), float),
                bit_rate=_number(fmt.get("bit_rate"), int),
            ),
            streams=streams,
        )
