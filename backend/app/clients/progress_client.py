"""Client for the ``/progress`` server-sent event stream.

Reconnecting is the client's decision, not the server's: a connection
attempt is retried with exponential backoff for transport failures and
5xx answers, and a stream that drops before ``done`` is reopened at most
``max_reconnects`` times.  Each new connection starts with a fresh
``snapshot``, so nothing is lost except intermediate ``update`` events.
"""
from contextlib import aclosing
from typing import AsyncIterator, Callable

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.logging import get_logger
from app.models.progress import (
    ProgressDone,
    ProgressEvent,
    ProgressSnapshot,
    SseEventName,
    progress_event_adapter,
)

logger = get_logger(__name__)

ProgressMessage = tuple[SseEventName, BaseModel]


class ProgressStreamError(Exception):
    """Raised when the progress stream cannot be (re)established."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _is_retryable(error: BaseException) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    return isinstance(error, ProgressStreamError) and (error.status_code or 0) >= 500


def decode_message(name: str, data: str) -> ProgressMessage | None:
    """Validate one SSE event; unknown event names are ignored."""
    if name == "snapshot":
        return "snapshot", ProgressSnapshot.model_validate_json(data)
    if name == "update":
        return "update", progress_event_adapter.validate_json(data)
    if name == "done":
        return "done", ProgressDone.model_validate_json(data)
    return None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Group raw SSE lines into ``(event, data)`` pairs."""
    name = "message"
    data: list[str] = []
    async for line in lines:
        if not line:
            if data:
                yield name, "\n".join(data)
            name, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            name = value
        elif field == "data":
            data.append(value)
    if data:
        yield name, "\n".join(data)


class ProgressClient:
    """Subscribes to job progress on a running media service."""

    def __init__(
        self,
        base_url: str,
        *,
        max_attempts: int = 5,
        max_reconnects: int = 3,
        wait_seconds: float = 1.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.max_reconnects = max_reconnects
        self.wait_seconds = wait_seconds
        # SSE streams idle between pings, so only connecting is time-bounded
        self._client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout, read=None),
        )

    async def __aenter__(self) -> "ProgressClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _connect(self, job_id: str) -> httpx.Response:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.wait_seconds,
                min=self.wait_seconds,
                max=self.wait_seconds * 8,
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                request = self._client.build_request(
                    "GET",
                    "/progress",
                    params={"jobId": job_id},
                    headers={"Accept": "text/event-stream"},
                )
                response = await self._client.send(request, stream=True)
                if response.status_code != 200:
                    await response.aclose()
                    raise ProgressStreamError(
                        f"Progress endpoint returned {response.status_code}",
                        status_code=response.status_code,
                    )
        return response

    async def events(self, job_id: str) -> AsyncIterator[ProgressMessage]:
        """Yield progress messages for *job_id* until ``done``.

        Raises:
            ProgressStreamError: Connecting failed or the stream dropped too often
            httpx.TransportError: Connecting failed at transport level
        """
        drops = 0
        while True:
            response = await self._connect(job_id)
            try:
                async for name, data in iter_sse(response.aiter_lines()):
                    try:
                        message = decode_message(name, data)
                    except ValidationError as e:
                        logger.warning(f"Ignoring malformed {name} event for job {job_id}: {e}")
                        continue
                    if message is None:
                        continue
                    yield message
                    if message[0] == "done":
                        return
            except httpx.TransportError as e:
                logger.info(f"Progress stream for job {job_id} interrupted: {e}")
            finally:
                await response.aclose()

            drops += 1
            if drops > self.max_reconnects:
                raise ProgressStreamError(
                    f"Progress stream for job {job_id} dropped {drops} times"
                )
            logger.info(f"Reconnecting to progress stream for job {job_id} ({drops}/{self.max_reconnects})")

    async def wait_done(
        self,
        job_id: str,
        on_update: Callable[[ProgressEvent], None] | None = None,
    ) -> ProgressDone:
        """Follow *job_id* to the end and return its ``done`` payload."""
        async with aclosing(self.events(job_id)) as messages:
            async for name, payload in messages:
                if name == "update" and on_update is not None:
                    on_update(payload)  # type: ignore[arg-type]
                elif name == "done":
                    return payload  # type: ignore[return-value]
        raise ProgressStreamError(f"Progress stream for job {job_id} ended without done")
