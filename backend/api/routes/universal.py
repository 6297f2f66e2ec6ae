"""
Universal stream proxy routes for arbitrary external HLS/DASH/MP4 sources.
"""
import re
import logging
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response
import pydantic
from pydantic import AliasChoices, Field

from api.deps import get_codec, get_public_base_url, get_relay
from core.errors import TokenError
from core.security import validate_source_url
from services.relay import CORS_HEADERS, StreamRelay
from services.tokens import MediaKind, ProxyOptions, TokenCodec, detect_stream_type

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/universal", tags=["universal"])

STREAM_PATH = "/api/universal/stream"
_EXTENSION = re.compile(r"\.(m3u8|mpd|mp4|webm|mkv|ts|m4s)$", re.IGNORECASE)
_URL_SUFFIXES = {MediaKind.HLS: ".m3u8", MediaKind.DASH: ".mpd"}


class UniversalGenerateRequest(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    source_url: Optional[str] = Field(None, validation_alias=AliasChoices("sourceUrl", "source_url"))
    enable_buffer: bool = Field(True, validation_alias=AliasChoices("enableBuffer", "enable_buffer"))
    enable_proxy: bool = Field(True, validation_alias=AliasChoices("enableProxy", "enable_proxy"))


def strip_extension(token_path: str) -> str:
    """Tokens may carry a cosmetic file extension for players that sniff URLs."""
    return _EXTENSION.sub("", token_path)


@router.post("/generate")
async def generate(
    request: Request,
    body: UniversalGenerateRequest,
    codec: TokenCodec = Depends(get_codec),
    base_url: str = Depends(get_public_base_url),
):
    """
    Generate a tokenized proxy URL for an external stream.
    """
    source_url = await validate_source_url(body.source_url, block_private=request.app.state.block_private_networks)
    stream_type = detect_stream_type(source_url)

    options = ProxyOptions(buffering=body.enable_buffer, proxy_enabled=body.enable_proxy, media_kind=stream_type)
    token = codec.issue_proxy_token(source_url, options)
    proxy_url = f"{base_url}{STREAM_PATH}/{token}{_URL_SUFFIXES.get(stream_type, '')}"
    logger.info(f"Generated {stream_type.value} proxy link for {source_url[:100]}")

    return {
        "success": True,
        "data": {
            "proxyUrl": proxy_url,
            "streamType": stream_type.value,
            "buffering": body.enable_buffer,
            "proxied": body.enable_proxy,
            "originalUrl": source_url,
        },
    }


@router.options("/stream/{token_path:path}")
async def stream_options(token_path: str):
    """Handle CORS preflight requests."""
    return Response(
        status_code=204,
        headers={
            **CORS_HEADERS,
            "Access-Control-Allow-Headers": "Range, Content-Type",
            "Access-Control-Max-Age": "86400",
        },
    )


@router.api_route("/stream/{token_path:path}", methods=["GET", "HEAD"])
async def stream(
    token_path: str,
    request: Request,
    codec: TokenCodec = Depends(get_codec),
    relay: StreamRelay = Depends(get_relay),
    base_url: str = Depends(get_public_base_url),
):
    """
    Relay an external stream, rewriting HLS playlists so every segment
    is fetched through this proxy as well.
    """
    grant = codec.verify_proxy(strip_extension(token_path))
    if grant is None:
        logger.warning("Rejected universal stream request with invalid token")
        raise TokenError()

    segment_options = grant.options.with_kind(MediaKind.SEGMENT)

    def make_segment_url(absolute_url: str) -> str:
        return f"{base_url}{STREAM_PATH}/{codec.issue_proxy_token(absolute_url, segment_options)}"

    # Playlist entries and redirects are not vetted at generate time
    url_guard = partial(validate_source_url, block_private=True) if request.app.state.block_private_networks else None

    return await relay.relay_external(
        grant,
        make_segment_url,
        method=request.method,
        range_header=request.headers.get("range"),
        url_guard=url_guard,
    )
