"""Test configuration and fixtures."""
import sys
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sse_starlette.sse import AppStatus

from app.core.config import settings
from app.main import create_app

FakeBinaryFactory = Callable[[str, str], str]


@dataclass
class UpstreamRoute:
    status: int = 200
    content: bytes = b""
    content_type: str = "application/octet-stream"
    content_length: int | None = None
    head_status: int | None = None


@dataclass
class FakeUpstream:
    """In-memory stand-in for remote media hosts, served through httpx.MockTransport."""

    routes: dict[str, UpstreamRoute] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def add(self, url: str, **kwargs: object) -> UpstreamRoute:
        route = UpstreamRoute(**kwargs)  # type: ignore[arg-type]
        self.routes[url] = route
        return route

    def methods(self) -> list[str]:
        return [request.method for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)

        if request.method == "HEAD":
            length = route.content_length if route.content_length is not None else len(route.content)
            return httpx.Response(
                route.head_status or route.status,
                headers={"content-type": route.content_type, "content-length": str(length)},
            )
        return httpx.Response(
            route.status,
            content=route.content,
            headers={"content-type": route.content_type},
        )


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> Generator[None, None, None]:
    """sse-starlette keeps a process-wide exit event bound to the first event loop."""
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_client(upstream: FakeUpstream) -> Generator[Callable[..., TestClient], None, None]:
    """Build test clients whose upstream HTTP goes to ``upstream``."""
    clients: list[TestClient] = []

    def _make(**kwargs: object) -> TestClient:
        app = create_app(http_transport=httpx.MockTransport(upstream.handler))
        test_client = TestClient(app, **kwargs)  # type: ignore[arg-type]
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    yield _make
    for test_client in clients:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    """Create a test client for the FastAPI app.

    Returns:
        TestClient instance
    """
    return make_client()


@pytest.fixture
def fake_binary(tmp_path: Path) -> FakeBinaryFactory:
    """Write an executable Python script standing in for ffmpeg, ffprobe or yt-dlp."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return str(path)

    return _make


# Reads all of stdin, reports progress like ffmpeg, echoes the input with a prefix
FFMPEG_OK = """
import sys
data = sys.stdin.buffer.read()
sys.stderr.write("frame=   50 fps=25.0 q=28.0 size=     256kB time=00:00:05.00 bitrate= 419.4kbits/s speed=1.00x\\r")
sys.stderr.flush()
sys.stdout.buffer.write(b"ENC:" + data)
"""

FFMPEG_FAIL = """
import sys
sys.stdin.buffer.read()
sys.stderr.write("pipe:0: Invalid data found when processing input\\n")
sys.exit(1)
"""

# Writes its own arguments to stdout so tests can inspect the preset
FFMPEG_ARGS = """
import sys
sys.stdin.buffer.read()
sys.stdout.write(" ".join(sys.argv[1:]))
"""


@pytest.fixture
def ffmpeg_ok(fake_binary: FakeBinaryFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = fake_binary("ffmpeg-ok", FFMPEG_OK)
    monkeypatch.setattr(settings, "FFMPEG_BINARY", path)
    return path


@pytest.fixture
def ffmpeg_fail(fake_binary: FakeBinaryFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = fake_binary("ffmpeg-fail", FFMPEG_FAIL)
    monkeypatch.setattr(settings, "FFMPEG_BINARY", path)
    return path


@pytest.fixture
def ffmpeg_args(fake_binary: FakeBinaryFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = fake_binary("ffmpeg-args", FFMPEG_ARGS)
    monkeypatch.setattr(settings, "FFMPEG_BINARY", path)
    return path


@pytest.fixture
def missing_binary(tmp_path: Path) -> str:
    return str(tmp_path / "does-not-exist")


# Reports download progress on stderr and writes the "media" to stdout in pieces
YTDLP_OK = """
import sys
sys.stderr.write("[youtube] test: Downloading webpage\\n")
sys.stderr.write("[download]  25.0% of 1.00MiB\\n")
sys.stderr.flush()
sys.stdout.buffer.write(b"SOURCE-")
sys.stdout.buffer.flush()
sys.stderr.write("[download] 100.0% of 1.00MiB\\n")
sys.stderr.flush()
sys.stdout.buffer.write(b"BYTES")
"""

YTDLP_FAIL = """
import sys
sys.stderr.write("ERROR: [youtube] test: Requested format is not available\\n")
sys.exit(1)
"""


@pytest.fixture
def ytdlp_ok(fake_binary: FakeBinaryFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = fake_binary("yt-dlp-ok", YTDLP_OK)
    monkeypatch.setattr(settings, "YTDLP_BINARY", path)
    return path


@pytest.fixture
def ytdlp_fail(fake_binary: FakeBinaryFactory, monkeypatch: pytest.MonkeyPatch) -> str:
    path = fake_binary("yt-dlp-fail", YTDLP_FAIL)
    monkeypatch.setattr(settings, "YTDLP_BINARY", path)
    return path
