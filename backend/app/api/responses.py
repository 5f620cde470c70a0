"""Response helpers for streamed downloads."""
import re
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import anyio
from starlette.responses import StreamingResponse
from starlette.types import Receive, Scope, Send


class ManagedStreamingResponse(StreamingResponse):
    """A StreamingResponse that always runs *on_close*.

    Starlette only finalises the body iterator if it was started; this hook
    also runs when the client is gone before the first chunk, so that
    subprocesses and admission slots are always released.
    """

    def __init__(self, content: Any, *, on_close: Callable[[], Awaitable[None]], **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self._on_close()


def sanitize_filename(filename: str) -> str:
    """Sanitize a filename for safe use in Content-Disposition header.

    Args:
        filename: Raw filename

    Returns:
        Sanitized filename safe for headers (ASCII only)
    """
    filename = re.sub(r'[^a-zA-Z0-9\s\-\._]', '', filename, flags=re.ASCII)
    filename = re.sub(r'\s+', '_', filename)
    if len(filename) > 200:
        filename = filename[:200]
    return filename or "download"


def build_content_disposition(filename: str) -> str:
    """Build an attachment Content-Disposition header.

    Uses RFC 5987 encoding so non-ASCII titles survive, with an ASCII
    fallback for older browsers.
    """
    ascii_filename = sanitize_filename(filename)
    encoded_filename = quote(filename, safe='')
    return f"attachment; filename=\"{ascii_filename}\"; filename*=UTF-8''{encoded_filename}"
