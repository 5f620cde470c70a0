"""Progress extraction from yt-dlp and ffmpeg diagnostic output.

``parse`` is a pure function over a chunk of text.  ``pump_diagnostics``
drains a subprocess stderr pipe through it without ever holding more than a
bounded amount of text, because a child process blocks as soon as its
stderr pipe fills up.
"""
import asyncio
import codecs
import re
from collections import deque
from typing import Callable

from app.core.logging import get_logger
from app.models.progress import Phase, ProgressEvent, SourceDownloadEvent, TranscodingEvent

logger = get_logger(__name__)

# ffmpeg terminates stats lines with \r, yt-dlp --newline with \n
_LINE_SPLIT_RE = re.compile(r"[\r\n]+")

_DOWNLOAD_PCT_RE = re.compile(r"\[download\]\s*(\d+(?:\.\d+)?)%")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\s*\w?bits/s)", re.IGNORECASE)

DIAGNOSTIC_READ_SIZE = 4096
MAX_PENDING_CHARS = 8192
DEFAULT_TAIL_LINES = 50

ProgressCallback = Callable[[ProgressEvent], None]


def _to_float(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _parse_download_line(line: str) -> SourceDownloadEvent | None:
    match = _DOWNLOAD_PCT_RE.search(line)
    if not match:
        return None
    raw = _to_float(match.group(1))
    percent = None if raw is None else max(0, min(100, int(raw)))
    return SourceDownloadEvent(percent=percent)


def _parse_transcode_line(line: str) -> TranscodingEvent | None:
    match = _TIME_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    secs = _to_float(seconds)
    position = None if secs is None else int(hours) * 3600 + int(minutes) * 60 + secs

    fps = _FPS_RE.search(line)
    speed = _SPEED_RE.search(line)
    bitrate = _BITRATE_RE.search(line)
    return TranscodingEvent(
        position_seconds=round(position, 3) if position is not None else None,
        fps=_to_float(fps.group(1)) if fps else None,
        speed=_to_float(speed.group(1)) if speed else None,
        bitrate=bitrate.group(1).replace(" ", "") if bitrate else None,
    )


def parse(phase: Phase, text: str) -> list[ProgressEvent]:
    """Turn a chunk of diagnostic text into zero or more progress events.

    Args:
        phase: Which producer the text came from
        text: Raw text; may hold several ``\\r``/``\\n`` separated lines

    Returns:
        One event per recognised line, in order
    """
    if phase is Phase.DOWNLOADING_SOURCE:
        line_parser = _parse_download_line
    elif phase is Phase.TRANSCODING:
        line_parser = _parse_transcode_line
    else:
        return []

    events: list[ProgressEvent] = []
    for line in _LINE_SPLIT_RE.split(text):
        if not line:
            continue
        event = line_parser(line)
        if event is not None:
            events.append(event)
    return events


def _dispatch(phase: Phase, line: str, on_event: ProgressCallback | None, tail: deque[str]) -> None:
    if not line.strip():
        return
    tail.append(line.strip())
    if on_event is None:
        return
    for event in parse(phase, line):
        try:
            on_event(event)
        except Exception as e:
            logger.warning(f"Progress callback error: {e}")


async def pump_diagnostics(
    reader: asyncio.StreamReader,
    phase: Phase,
    on_event: ProgressCallback | None,
    tail: deque[str] | None = None,
) -> deque[str]:
    """Drain *reader* until EOF, forwarding parsed events to *on_event*.

    Only the last ``tail.maxlen`` lines are kept, for error messages.

    Returns:
        The tail deque
    """
    if tail is None:
        tail = deque(maxlen=DEFAULT_TAIL_LINES)
    # Multi-byte characters may straddle two reads
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        data = await reader.read(DIAGNOSTIC_READ_SIZE)
        if not data:
            break
        text = pending + decoder.decode(data)
        lines = _LINE_SPLIT_RE.split(text)
        # A line without terminator never grows past MAX_PENDING_CHARS
        pending = lines.pop()[-MAX_PENDING_CHARS:]
        for line in lines:
            _dispatch(phase, line, on_event, tail)
    pending += decoder.decode(b"", final=True)
    if pending:
        _dispatch(phase, pending, on_event, tail)
    return tail


def format_tail(tail: deque[str], limit: int = 500) -> str:
    """Render the last diagnostic lines for an error message."""
    text = " | ".join(tail)
    return text[-limit:]
