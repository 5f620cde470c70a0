"""Server-sent progress events for download jobs."""
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Query
from sse_starlette.sse import EventSourceResponse

from app.api.deps import MediaServices, get_services
from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get(
    "/progress",
    summary="Subscribe to job progress",
    description=(
        "Server-sent events for a job id: one 'snapshot', then 'update' events, "
        "and a final 'done' after which the stream ends"
    ),
    responses={200: {"description": "text/event-stream of progress events"}},
)
async def stream_progress(
    job_id: str = Query(..., alias="jobId", min_length=1, max_length=128),
    services: MediaServices = Depends(get_services),
) -> EventSourceResponse:
    """Subscribe to a job, which need not exist yet."""
    registry = services.registry

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        subscription = registry.subscribe(job_id)
        try:
            async for name, payload in subscription:
                yield {"event": name, "data": payload.model_dump_json()}
        finally:
            registry.unsubscribe(job_id, subscription)
            if subscription.dropped:
                logger.debug(f"Subscriber for job {job_id} dropped {subscription.dropped} events")

    return EventSourceResponse(event_generator(), ping=settings.SSE_PING_SECONDS)
