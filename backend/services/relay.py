"""
Range-aware streaming relay between a client and an upstream origin.

Each call handles one client request and moves through these states:

    PENDING -> CONNECTING -> STREAMING | BUFFERING -> COMPLETED | FAILED | TIMED_OUT

Tokens and ranges are checked by the caller before a relay request is
created, so nothing bad reaches CONNECTING. Whether the body is streamed
or buffered for playlist rewriting is decided once, when the upstream
headers arrive.
"""
import codecs
import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx
from starlette.responses import Response, StreamingResponse

from core.config import (
    UPSTREAM_TIMEOUT_SECONDS,
    UPSTREAM_USER_AGENT,
    STREAM_CHUNK_SIZE,
    MAX_MANIFEST_BYTES,
    STREAM_CACHE_CONTROL,
)
from core.errors import RangeNotSatisfiable, StreamAborted, StreamError, UpstreamError, UpstreamTimeout
from services.manifest import PLAYLIST_CONTENT_TYPE, is_playlist, rewrite_hls_manifest
from services.ranges import ResolvedRange
from services.tokens import MediaKind, ProxyGrant

logger = logging.getLogger(__name__)

# Headers mirrored from upstream onto the client response
FORWARDED_HEADERS = ("content-type", "content-length", "content-range", "accept-ranges")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Expose-Headers": "Content-Range, Accept-Ranges, Content-Length",
}

DEFAULT_CONTENT_TYPES = {
    MediaKind.HLS: PLAYLIST_CONTENT_TYPE,
    MediaKind.DASH: "application/dash+xml",
    MediaKind.WEBM: "video/webm",
    MediaKind.MKV: "video/x-matroska",
}

MAX_REDIRECTS = 5

# Async check run on every URL before it is requested; raises StreamError to refuse it
UrlGuard = Callable[[str], Awaitable[object]]


class RelayState(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    BUFFERING = "buffering"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def create_upstream_client(
    timeout: float = UPSTREAM_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the shared HTTP client used for every upstream request."""
    return httpx.AsyncClient(
        transport=transport,
        follow_redirects=True,
        max_redirects=MAX_REDIRECTS,
        timeout=httpx.Timeout(timeout),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        headers={
            "User-Agent": UPSTREAM_USER_AGENT,
            "Accept": "*/*",
            "Accept-Encoding": "identity",
        },
    )


def _total_from_content_range(value: Optional[str]) -> int:
    # "bytes */1234" or "bytes 0-99/1234"
    if not value or "/" not in value:
        return 0
    total = value.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else 0


def _text_encoding(charset: Optional[str]) -> str:
    """Declared charset if Python knows it, otherwise UTF-8."""
    if charset:
        try:
            return codecs.lookup(charset).name
        except LookupError:
            logger.warning(f"Unknown playlist charset {charset[:40]!r}, decoding as UTF-8")
    return "utf-8"


class RelayRequest:
    """
    State for a single relayed request.

    Lives only as long as the request, so duplicate or retried requests
    for the same token never share anything.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, method: str = "GET",
                 headers: Optional[Dict[str, str]] = None, timeout: float = UPSTREAM_TIMEOUT_SECONDS,
                 chunk_size: int = STREAM_CHUNK_SIZE):
        self.client = client
        self.url = url
        self.method = method
        self.headers = headers or {}
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.state = RelayState.PENDING
        self.bytes_sent = 0

    def transition(self, state: RelayState):
        logger.debug(f"Relay {self.url[:60]}: {self.state.value} -> {state.value}")
        self.state = state

    async def connect(self, url_guard: Optional[UrlGuard] = None) -> httpx.Response:
        """
        Open the upstream request and wait for its headers.

        With ``url_guard`` the URL and every redirect target are passed to
        it before they are requested; it raises to refuse a URL.

        Raises UpstreamTimeout, UpstreamError or RangeNotSatisfiable. No
        bytes have reached the client at this point, so these can still be
        turned into a clean error response.
        """
        self.transition(RelayState.CONNECTING)
        request = self.client.build_request(self.method, self.url, headers=self.headers)
        redirects = 0

        while True:
            if url_guard is not None:
                await self._check_url(url_guard, str(request.url))

            upstream = await self._send(request, follow_redirects=url_guard is None)
            if url_guard is None or upstream.next_request is None:
                break

            await upstream.aclose()
            redirects += 1
            if redirects > MAX_REDIRECTS:
                self.transition(RelayState.FAILED)
                logger.error(f"Too many redirects for {self.url[:100]}")
                raise UpstreamError("Source redirected too many times")
            request = upstream.next_request

        if upstream.status_code == 416:
            total = _total_from_content_range(upstream.headers.get("content-range"))
            await upstream.aclose()
            self.transition(RelayState.FAILED)
            logger.warning(f"Upstream rejected range {self.headers.get('Range')} for {self.url[:100]}")
            raise RangeNotSatisfiable(total)

        if not 200 <= upstream.status_code < 300:
            status = upstream.status_code
            await upstream.aclose()
            self.transition(RelayState.FAILED)
            logger.error(f"Upstream responded {status} for {self.url[:100]}")
            raise UpstreamError(f"Source responded with status {status}")

        return upstream

    async def _check_url(self, url_guard: UrlGuard, url: str):
        try:
            await url_guard(url)
        except StreamError:
            self.transition(RelayState.FAILED)
            logger.warning(f"Refused upstream URL {url[:100]}")
            raise

    async def _send(self, request: httpx.Request, follow_redirects: bool) -> httpx.Response:
        try:
            return await asyncio.wait_for(
                self.client.send(request, stream=True, follow_redirects=follow_redirects),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.transition(RelayState.TIMED_OUT)
            logger.error(f"Upstream timeout after {self.timeout}s for {self.url[:100]}")
            raise UpstreamTimeout()
        except httpx.HTTPError as e:
            self.transition(RelayState.FAILED)
            logger.error(f"Upstream request failed for {self.url[:100]}: {e!r}")
            raise UpstreamError("Failed to fetch from source")

    async def iter_body(self, upstream: httpx.Response, limit: Optional[int] = None) -> AsyncIterator[bytes]:
        """
        Yield upstream bytes in order, closing the upstream response when done.

        With ``limit`` at most that many bytes are sent, and ending short of
        it is a failure. Failures here happen after the response has started,
        so they are logged and re-raised to abort the client connection.
        """
        self.transition(RelayState.STREAMING)
        try:
            async for chunk in upstream.aiter_bytes(self.chunk_size):
                if limit is not None:
                    remaining = limit - self.bytes_sent
                    if remaining <= 0:
                        break
                    chunk = chunk[:remaining]
                self.bytes_sent += len(chunk)
                yield chunk

            if limit is not None and self.bytes_sent < limit:
                self.transition(RelayState.FAILED)
                logger.error(f"Upstream ended after {self.bytes_sent} of {limit} bytes: {self.url[:100]}")
                raise StreamAborted(f"Source ended after {self.bytes_sent} of {limit} bytes")

            self.transition(RelayState.COMPLETED)
        except httpx.TimeoutException as e:
            self.transition(RelayState.TIMED_OUT)
            logger.error(f"Upstream timed out mid-stream after {self.bytes_sent} bytes: {e!r}")
            raise
        except httpx.HTTPError as e:
            self.transition(RelayState.FAILED)
            logger.error(f"Upstream dropped mid-stream after {self.bytes_sent} bytes: {e!r}")
            raise
        except (asyncio.CancelledError, GeneratorExit):
            # Client went away: the response closes or cancels this generator
            self.transition(RelayState.FAILED)
            logger.info(f"Client disconnected after {self.bytes_sent} bytes: {self.url[:60]}")
            raise
        finally:
            await upstream.aclose()

    async def read_text(self, upstream: httpx.Response, max_bytes: int = MAX_MANIFEST_BYTES) -> str:
        """Buffer a whole (small) text body, e.g. a playlist."""
        self.transition(RelayState.BUFFERING)
        chunks = []
        size = 0
        try:
            async for chunk in upstream.aiter_bytes(self.chunk_size):
                size += len(chunk)
                if size > max_bytes:
                    self.transition(RelayState.FAILED)
                    logger.error(f"Playlist larger than {max_bytes} bytes: {self.url[:100]}")
                    raise UpstreamError("Playlist is too large")
                chunks.append(chunk)
        except httpx.TimeoutException:
            self.transition(RelayState.TIMED_OUT)
            logger.error(f"Upstream timed out while reading playlist: {self.url[:100]}")
            raise UpstreamTimeout()
        except httpx.HTTPError as e:
            self.transition(RelayState.FAILED)
            logger.error(f"Upstream failed while reading playlist: {e!r}")
            raise UpstreamError("Failed to fetch from source")
        finally:
            await upstream.aclose()

        self.transition(RelayState.COMPLETED)
        return b"".join(chunks).decode(_text_encoding(upstream.charset_encoding), errors="replace")


class StreamRelay:
    """Relays resource and external streams through one shared HTTP client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        chunk_size: int = STREAM_CHUNK_SIZE,
        max_manifest_bytes: int = MAX_MANIFEST_BYTES,
    ):
        self.client = client
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.max_manifest_bytes = max_manifest_bytes

    def request(self, url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None) -> RelayRequest:
        return RelayRequest(self.client, url, method=method, headers=headers,
                            timeout=self.timeout, chunk_size=self.chunk_size)

    async def aclose(self):
        await self.client.aclose()

    async def relay_resource(
        self,
        url: str,
        byte_range: ResolvedRange,
        content_type: str = "video/mp4",
        headers: Optional[Dict[str, str]] = None,
    ) -> StreamingResponse:
        """
        Stream a window of a resource whose size is already known.

        Response headers come from the resolved range, not from upstream,
        and exactly ``byte_range.content_length`` bytes are sent.
        """
        outgoing = dict(headers or {})
        upstream_range = byte_range.upstream_range_header()
        if upstream_range:
            outgoing["Range"] = upstream_range

        relay_request = self.request(url, headers=outgoing)
        upstream = await relay_request.connect()

        if byte_range.is_partial and upstream.status_code != 206 and not byte_range.covers_whole_resource:
            await upstream.aclose()
            relay_request.transition(RelayState.FAILED)
            logger.error(f"Upstream ignored range {upstream_range} (status {upstream.status_code})")
            raise UpstreamError("Source does not support range requests")

        response_headers = {
            "Accept-Ranges": "bytes",
            "Content-Type": content_type,
            "Cache-Control": STREAM_CACHE_CONTROL,
            **byte_range.response_headers(),
        }
        logger.info(
            f"Streaming bytes {byte_range.start}-{byte_range.end}/{byte_range.total_size} "
            f"({byte_range.status_code})"
        )
        return StreamingResponse(
            relay_request.iter_body(upstream, limit=byte_range.content_length),
            status_code=byte_range.status_code,
            headers=response_headers,
        )

    async def relay_external(
        self,
        grant: ProxyGrant,
        make_segment_url: Callable[[str], str],
        method: str = "GET",
        range_header: Optional[str] = None,
        url_guard: Optional[UrlGuard] = None,
    ) -> Response:
        """
        Relay an external URL, rewriting it first if it turns out to be a playlist.

        ``url_guard`` vets the source URL and every redirect target before
        they are fetched.
        """
        url = grant.source_url
        media_kind = grant.options.media_kind

        outgoing = {}
        # Playlists are always served whole after rewriting
        if range_header and media_kind != MediaKind.HLS:
            outgoing["Range"] = range_header

        relay_request = self.request(url, method=method, headers=outgoing)
        upstream = await relay_request.connect(url_guard)

        content_type = upstream.headers.get("content-type")
        playlist = is_playlist(content_type, url)

        response_headers = dict(CORS_HEADERS)
        for key in FORWARDED_HEADERS:
            if key in upstream.headers:
                response_headers[key] = upstream.headers[key]
        if "content-encoding" in upstream.headers:
            # Bodies are relayed decoded, so the encoded length does not apply
            response_headers.pop("content-length", None)
        if not content_type:
            response_headers["content-type"] = DEFAULT_CONTENT_TYPES.get(media_kind, "video/mp4")

        if method == "HEAD":
            await upstream.aclose()
            relay_request.transition(RelayState.COMPLETED)
            if playlist:
                response_headers.pop("content-length", None)
            return Response(status_code=upstream.status_code, headers=response_headers)

        if playlist:
            logger.info(f"Rewriting HLS playlist for {url[:100]}")
            text = await relay_request.read_text(upstream, self.max_manifest_bytes)
            rewritten = rewrite_hls_manifest(text, str(upstream.url), make_segment_url)
            for key in ("content-length", "content-range", "content-type"):
                response_headers.pop(key, None)
            response_headers["Cache-Control"] = "no-cache"
            return Response(content=rewritten, media_type=PLAYLIST_CONTENT_TYPE, headers=response_headers)

        logger.info(f"Proxying {media_kind.value} stream ({upstream.status_code}) for {url[:100]}")
        return StreamingResponse(
            relay_request.iter_body(upstream),
            status_code=upstream.status_code,
            headers=response_headers,
        )
