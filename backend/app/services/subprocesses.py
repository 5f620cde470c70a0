"""Spawning and reaping helper processes (ffmpeg, ffprobe, yt-dlp)."""
import asyncio
import os
import signal

from app.core.logging import get_logger
from app.services.errors import SpawnError

logger = get_logger(__name__)

TERMINATE_GRACE_SECONDS = 2.0

_POSIX = os.name == "posix"


async def spawn(binary: str, args: list[str], *, stdin: bool = False) -> asyncio.subprocess.Process:
    """Start *binary* with piped stdout/stderr (and optionally stdin).

    On POSIX the child leads its own process group so that ``terminate``
    also reaches grandchildren (yt-dlp runs ffmpeg itself when merging).

    Raises:
        SpawnError: If the binary is missing or cannot be executed
    """
    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            *args,
            stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=_POSIX,  # Prevent signal propagation
        )
    except OSError as e:
        logger.error(f"Failed to start {binary}: {e}")
        raise SpawnError(f"Failed to start {os.path.basename(binary)}: {e}")
    logger.debug(f"Started {os.path.basename(binary)} (pid {process.pid})")
    return process


def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if _POSIX:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except (ProcessLookupError, PermissionError):
        pass


async def terminate(process: asyncio.subprocess.Process, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    """Stop *process* if it is still running: SIGTERM, then SIGKILL after *grace*."""
    if process.returncode is not None:
        return
    _signal(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning(f"pid {process.pid} ignored SIGTERM, killing")

    _signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
    try:
        await asyncio.wait_for(process.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.error(f"pid {process.pid} did not report its exit after SIGKILL")
