"""
Tests for source URL validation and public base URL detection.
"""
import asyncio
import socket

import pytest
import sys
import os

from starlette.requests import Request

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.errors import InputError
from core.security import _is_private_ip, get_base_url, validate_source_url


def make_request(headers=None, scheme="http"):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/api/generate-link",
        "query_string": b"",
        "headers": raw,
        "scheme": scheme,
        "server": ("internal", 8000),
    })


class TestValidateSourceUrl:
    """Test validation of external stream URLs."""

    @pytest.mark.asyncio
    async def test_public_url_accepted(self):
        """A public http(s) URL is returned stripped."""
        assert await validate_source_url("  https://8.8.8.8/live/index.m3u8 ") == "https://8.8.8.8/live/index.m3u8"

    @pytest.mark.asyncio
    async def test_missing_url(self):
        """Empty or missing input reports the missing parameter."""
        for value in (None, "", "   "):
            with pytest.raises(InputError) as excinfo:
                await validate_source_url(value)
            assert excinfo.value.error == "Missing sourceUrl parameter"
            assert excinfo.value.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        "not-a-url",
        "ftp://example.com/video.mp4",
        "file:///etc/passwd",
        "javascript:alert(1)",
        "http://",
    ])
    async def test_invalid_urls(self, url):
        """Anything but an absolute http(s) URL is rejected."""
        with pytest.raises(InputError) as excinfo:
            await validate_source_url(url, block_private=False)
        assert excinfo.value.error == "Invalid URL"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        "http://127.0.0.1/video.mp4",
        "http://10.0.0.5/video.mp4",
        "http://192.168.1.1:8080/live.m3u8",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]/video.mp4",
    ])
    async def test_internal_networks_blocked(self, url):
        """Internal addresses are refused when blocking is on."""
        with pytest.raises(InputError):
            await validate_source_url(url)

    @pytest.mark.asyncio
    async def test_internal_networks_allowed_when_disabled(self):
        """Blocking can be switched off for local development."""
        assert await validate_source_url("http://127.0.0.1/video.mp4", block_private=False) == "http://127.0.0.1/video.mp4"

    @pytest.mark.asyncio
    async def test_private_ip_detection(self):
        """IP literals are checked without a DNS lookup."""
        assert await _is_private_ip("10.1.2.3")
        assert not await _is_private_ip("8.8.8.8")

    @pytest.mark.asyncio
    async def test_hostnames_resolved_on_event_loop(self, monkeypatch):
        """Hostnames are resolved with the loop's resolver, not a blocking call."""
        lookups = []

        async def fake_getaddrinfo(host, port, *args, **kwargs):
            lookups.append(host)
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", 0))]

        def blocking_getaddrinfo(*args, **kwargs):
            raise AssertionError("blocking resolver used")

        loop = asyncio.get_running_loop()
        monkeypatch.setattr(loop, "getaddrinfo", fake_getaddrinfo)
        monkeypatch.setattr(socket, "getaddrinfo", blocking_getaddrinfo)

        with pytest.raises(InputError):
            await validate_source_url("http://internal.example.test/video.mp4")
        assert lookups == ["internal.example.test"]

    @pytest.mark.asyncio
    async def test_unresolvable_host_blocked(self, monkeypatch):
        """A host that does not resolve is refused."""
        async def failing_getaddrinfo(host, port, *args, **kwargs):
            raise socket.gaierror("Name or service not known")

        monkeypatch.setattr(asyncio.get_running_loop(), "getaddrinfo", failing_getaddrinfo)
        with pytest.raises(InputError):
            await validate_source_url("http://nowhere.invalid/video.mp4")


class TestGetBaseUrl:
    """Test public base URL detection."""

    def test_forwarded_headers_win(self):
        """A reverse proxy's forwarded headers take priority."""
        request = make_request({"host": "internal:8000", "x-forwarded-host": "stream.example.com",
                                "x-forwarded-proto": "https"})
        assert get_base_url(request, "https://configured.example.com") == "https://stream.example.com"

    def test_first_forwarded_value_used(self):
        """Chained proxies append values; the first one is the client-facing one."""
        request = make_request({"x-forwarded-host": "a.example.com, b.internal",
                                "x-forwarded-proto": "https, http"})
        assert get_base_url(request) == "https://a.example.com"

    def test_configured_base_url(self):
        """The configured BASE_URL is used without forwarded headers."""
        request = make_request({"host": "internal:8000"})
        assert get_base_url(request, "https://configured.example.com/") == "https://configured.example.com"

    def test_host_header_fallback(self):
        """Without configuration the request's own host is used."""
        request = make_request({"host": "localhost:8000"})
        assert get_base_url(request) == "http://localhost:8000"
