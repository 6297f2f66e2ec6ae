"""
Shared fixtures: a fake clock, an isolated token codec and an app whose
upstream traffic goes to an in-process mock instead of the network.
"""
import json
import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import create_app
from services.cache import TTLCache
from services.drive import DriveClient
from services.relay import StreamRelay, create_upstream_client
from services.tokens import TokenCodec

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
FILE_ID = "1AbCdEfGhIjKlMnOpQrStUvWxYz012345"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def serve_bytes(data: bytes, content_type: str = "video/mp4"):
    """Handler that serves ``data`` and honours simple byte ranges."""
    def handler(request: httpx.Request) -> httpx.Response:
        range_header = request.headers.get("range")
        if range_header:
            start_text, _, end_text = range_header[len("bytes="):].partition("-")
            start = int(start_text)
            end = int(end_text) if end_text else len(data) - 1
            return httpx.Response(
                206,
                headers={
                    "content-type": content_type,
                    "content-range": f"bytes {start}-{end}/{len(data)}",
                    "accept-ranges": "bytes",
                },
                content=data[start:end + 1],
            )
        return httpx.Response(200, headers={"content-type": content_type, "accept-ranges": "bytes"}, content=data)
    return handler


class MockUpstream:
    """
    Stand-in for every upstream origin. Handlers are keyed by URL without
    the query string; unknown URLs answer 404.
    """

    def __init__(self):
        self.handlers = {}
        self.requests = []

    def add(self, url: str, handler):
        self.handlers[url] = handler

    def add_drive_file(self, file_id: str, data: bytes, name: str = "movie.mp4", mime_type: str = "video/mp4",
                       width: int = 1920, height: int = 1080, duration_millis: int = 600000, size=None):
        metadata = {
            "id": file_id,
            "name": name,
            "size": str(len(data) if size is None else size),
            "mimeType": mime_type,
            "videoMediaMetadata": {"width": width, "height": height, "durationMillis": str(duration_millis)},
        }
        media = serve_bytes(data, mime_type)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.params.get("alt") == "media":
                return media(request)
            return httpx.Response(200, content=json.dumps(metadata).encode(),
                                  headers={"content-type": "application/json"})

        self.add(f"{DRIVE_FILES_URL}/{file_id}", handler)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = str(request.url.copy_with(query=None))
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, content=b"not found")
        result = handler(request)
        if hasattr(result, "__await__"):
            result = await result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    cache = TTLCache(3600, clock=clock, name="token cache")
    return TokenCodec("test-secret", ttl_seconds=3600, clock=clock, cache=cache)


@pytest.fixture
def upstream():
    return MockUpstream()


@pytest.fixture
def http_client(upstream):
    return create_upstream_client(transport=httpx.MockTransport(upstream))


@pytest.fixture
def relay(http_client):
    return StreamRelay(http_client, timeout=2.0)


@pytest.fixture
def app(codec, upstream, http_client, relay):
    drive = DriveClient(http_client, api_key="test-key", cache=TTLCache(300, name="metadata cache"))
    return create_app(
        codec=codec,
        drive=drive,
        relay=relay,
        http_client=http_client,
        base_url=None,
        block_private_networks=False,
    )


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)
