"""Service container shared by the API routes."""
from dataclasses import dataclass

import httpx
from fastapi import Request

from app.core.config import settings
from app.services.admission import AdmissionController
from app.services.job_registry import JobRegistry
from app.services.probe import ProbeService
from app.services.source_resolver import SourceResolver
from app.services.transcoder import TranscodeOrchestrator


@dataclass
class MediaServices:
    """Everything a request needs, created once per application."""

    http_client: httpx.AsyncClient
    registry: JobRegistry
    admission: AdmissionController
    resolver: SourceResolver
    orchestrator: TranscodeOrchestrator
    prober: ProbeService

    @classmethod
    def create(cls, transport: httpx.AsyncBaseTransport | None = None) -> "MediaServices":
        http_client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=True,
            timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
            headers={"User-Agent": settings.HTTP_USER_AGENT},
        )
        resolver = SourceResolver(http_client)
        return cls(
            http_client=http_client,
            registry=JobRegistry(
                retention_seconds=settings.JOB_RETENTION_SECONDS,
                queue_size=settings.SUBSCRIBER_QUEUE_SIZE,
            ),
            admission=AdmissionController(settings.MAX_CONCURRENT_TRANSCODES),
            resolver=resolver,
            orchestrator=TranscodeOrchestrator(resolver),
            prober=ProbeService(),
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()


def get_services(request: Request) -> MediaServices:
    """FastAPI dependency returning the application's services."""
    return request.app.state.services
