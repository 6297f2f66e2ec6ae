"""
Range-aware streaming of cloud videos behind resource tokens.
"""
import logging

from fastapi import APIRouter, Depends, Request
from starlette.responses import Response

from api.deps import get_codec, get_drive, get_relay
from core.config import STREAM_CACHE_CONTROL
from core.errors import NotFoundError, TokenError
from services.drive import DriveClient
from services.ranges import resolve_range
from services.relay import StreamRelay
from services.tokens import TokenCodec

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/stream", tags=["stream"])

STREAM_CONTENT_TYPE = "video/mp4"


@router.api_route("/{token}.mp4", methods=["GET", "HEAD"])
async def stream_video(
    token: str,
    request: Request,
    codec: TokenCodec = Depends(get_codec),
    drive: DriveClient = Depends(get_drive),
    relay: StreamRelay = Depends(get_relay),
):
    """
    Stream a cloud video with Range support for seeking.

    HEAD answers with the full size so players can plan their requests.
    """
    grant = codec.verify_resource(token)
    if grant is None:
        logger.warning("Rejected stream request with invalid token")
        raise TokenError()

    info = await drive.get_file_info(grant.resource_id)
    if info is None:
        raise NotFoundError("Video file not found", error="File not found")

    if request.method == "HEAD":
        return Response(
            status_code=200,
            headers={
                "Accept-Ranges": "bytes",
                "Content-Type": STREAM_CONTENT_TYPE,
                "Content-Length": str(info.byte_size),
                "Cache-Control": STREAM_CACHE_CONTROL,
            },
        )

    byte_range = resolve_range(request.headers.get("range"), info.byte_size)
    logger.info(f"Streaming {grant.resource_id} at quality {grant.quality.value}")

    return await relay.relay_resource(
        drive.media_url(info.id),
        byte_range,
        content_type=STREAM_CONTENT_TYPE,
    )
