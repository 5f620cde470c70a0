"""In-memory job registry and progress broadcast.

The registry is the rendezvous point between download requests (producers
of progress) and progress subscribers: either side may reference a job id
first and the job is created lazily.  Each subscriber owns a bounded queue;
a full queue drops its oldest event instead of blocking the producer, so a
slow browser tab can never stall an ffmpeg stderr pump.

All queue operations must happen on the event loop thread.  The lock only
protects the job map and subscriber sets against concurrent mutation.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

from pydantic import BaseModel

from app.core.logging import get_logger
from app.models.progress import (
    Phase,
    ProgressDone,
    ProgressEvent,
    ProgressSnapshot,
    SseEventName,
    TranscodingEvent,
)

logger = get_logger(__name__)


class Subscription:
    """One connected progress listener."""

    def __init__(self, job_id: str, maxsize: int) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[tuple[SseEventName, BaseModel]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._finished = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, name: SseEventName, payload: BaseModel) -> bool:
        """Enqueue without blocking; returns False once the subscriber is closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait((name, payload))
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait((name, payload))
        return True

    def close(self) -> None:
        self._closed = True

    def __aiter__(self) -> AsyncIterator[tuple[SseEventName, BaseModel]]:
        return self

    async def __anext__(self) -> tuple[SseEventName, BaseModel]:
        if self._finished:
            raise StopAsyncIteration
        name, payload = await self._queue.get()
        if name == "done":
            self._finished = True
        return name, payload


@dataclass
class Job:
    """Tracks the progress state of a single job."""

    job_id: str
    total_duration: float | None = None
    last_position: float = 0.0
    last_percent: int | None = None
    phase: Phase | None = None
    completed: bool = False
    failed: bool = False
    error: str | None = None
    finished_at: float | None = None
    started: bool = False
    last_seen: float = 0.0
    subscribers: set[Subscription] = field(default_factory=set)

    @property
    def finished(self) -> bool:
        return self.completed or self.failed

    def computed_percent(self) -> int | None:
        """Percent from position/duration, never lower than a previous value."""
        if not self.total_duration:
            return None
        percent = min(100, round(self.last_position / self.total_duration * 100))
        if self.last_percent is not None:
            percent = max(percent, self.last_percent)
        self.last_percent = percent
        return percent

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            duration=self.total_duration,
            position_seconds=self.last_position,
            percent=self.computed_percent(),
            phase=self.phase,
            done=self.completed,
            failed=self.failed,
        )

    def done_event(self) -> ProgressDone:
        return ProgressDone(ok=self.completed, error=self.error, percent=self.last_percent)


class JobRegistry:
    """Process-wide map from job id to job state, owned by the application."""

    def __init__(
        self,
        retention_seconds: float,
        queue_size: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        self._retention = retention_seconds
        self._queue_size = queue_size
        self._clock = clock

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_or_create(self, job_id: str) -> Job:
        """Return the job for *job_id*, creating an empty one if needed."""
        self.purge_expired()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                job = Job(job_id=job_id, last_seen=self._clock())
                self._jobs[job_id] = job
                logger.debug(f"Created job {job_id}")
            return job

    def start(self, job_id: str) -> Job:
        """Claim *job_id* for a new download.

        A job id reused after its previous run finished starts over from a
        clean state; listeners of the previous run are detached, since they
        have already been sent its ``done``.
        """
        job = self.get_or_create(job_id)
        with self._lock:
            if job.finished:
                stale = list(job.subscribers)
                job.subscribers.clear()
                job.total_duration = None
                job.last_position = 0.0
                job.last_percent = None
                job.phase = None
                job.completed = False
                job.failed = False
                job.error = None
                job.finished_at = None
                for subscription in stale:
                    subscription.close()
                logger.info(f"Job {job_id} restarted")
            job.started = True
            job.last_seen = self._clock()
        return job

    def update(
        self,
        job_id: str,
        *,
        duration: float | None = None,
        event: ProgressEvent | None = None,
    ) -> ProgressEvent | None:
        """Merge new state into a job and broadcast *event* as an ``update``.

        Args:
            job_id: Job to update (created if unknown)
            duration: Total media duration, when it becomes known
            event: Progress event reported by a producer

        Returns:
            The event as broadcast, with percent and position resolved
        """
        job = self.get_or_create(job_id)
        job.started = True
        job.last_seen = self._clock()
        if duration is not None and duration > 0:
            job.total_duration = duration
        if event is None:
            return None
        if job.finished:
            logger.debug(f"Ignoring progress for finished job {job_id}")
            return None

        changes: dict[str, Any] = {}
        if isinstance(event, TranscodingEvent) and event.position_seconds is not None:
            job.last_position = max(job.last_position, event.position_seconds)
            changes["position_seconds"] = job.last_position
        percent = job.computed_percent()
        # Without a duration the downloader's own percent passes through as-is
        changes["percent"] = percent if percent is not None else event.percent
        job.phase = Phase(event.phase)

        resolved = event.model_copy(update=changes)
        self._broadcast(job, "update", resolved)
        return resolved

    def subscribe(self, job_id: str) -> Subscription:
        """Register a listener; its first event is always a ``snapshot``."""
        job = self.get_or_create(job_id)
        subscription = Subscription(job_id, self._queue_size)
        subscription.offer("snapshot", job.snapshot())
        if job.finished:
            subscription.offer("done", job.done_event())
        with self._lock:
            job.subscribers.add(subscription)
            job.last_seen = self._clock()
            count = len(job.subscribers)
        logger.debug(f"Subscriber attached to job {job_id} ({count} active)")
        return subscription

    def snapshot(self, job_id: str) -> ProgressSnapshot:
        """Current state of *job_id*, created if unknown."""
        return self.get_or_create(job_id).snapshot()

    def unsubscribe(self, job_id: str, subscription: Subscription) -> None:
        """Detach a listener; the job itself is untouched."""
        subscription.close()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.subscribers.discard(subscription)
                job.last_seen = self._clock()

    def mark_done(self, job_id: str, ok: bool, error: str | None = None) -> None:
        """Record the terminal state and notify every subscriber.

        The job stays visible for the retention window so that a client that
        reconnects right after the end still receives ``done``.
        """
        job = self.get_or_create(job_id)
        if job.finished:
            return
        job.completed = ok
        job.failed = not ok
        job.error = None if ok else (error or "Job failed")
        if ok and job.total_duration:
            job.last_position = max(job.last_position, job.total_duration)
            job.computed_percent()
        job.finished_at = self._clock()
        self._broadcast(job, "done", job.done_event())
        if ok:
            logger.info(f"Job {job_id} completed")
        else:
            logger.warning(f"Job {job_id} failed: {job.error}")

    def _expired(self, job: Job, now: float) -> bool:
        if job.finished_at is not None:
            return now - job.finished_at >= self._retention
        # Named by a listener only, and nobody is listening any more
        return not job.started and not job.subscribers and now - job.last_seen >= self._retention

    def purge_expired(self) -> int:
        """Delete finished jobs, and never-started jobs nobody listens to, after the retention window."""
        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if self._expired(job, now)]
            for job_id in expired:
                job = self._jobs.pop(job_id)
                for subscription in job.subscribers:
                    subscription.close()
        for job_id in expired:
            logger.debug(f"Expired job {job_id}")
        return len(expired)

    def _broadcast(self, job: Job, name: SseEventName, payload: BaseModel) -> None:
        with self._lock:
            subscribers = list(job.subscribers)
        stale = [s for s in subscribers if not s.offer(name, payload)]
        if stale:
            with self._lock:
                job.subscribers.difference_update(stale)
