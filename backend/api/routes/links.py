"""
Cloud video analysis and stream link generation routes.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
import pydantic
from pydantic import AliasChoices, Field

from api.deps import get_codec, get_drive, get_public_base_url
from core.errors import InputError, NotFoundError
from services.drive import DriveClient, FileInfo, extract_file_id
from services.quality import analyze_video_quality
from services.tokens import Quality, TokenCodec

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["links"])


class AnalyzeRequest(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    resource_url: Optional[str] = Field(None, validation_alias=AliasChoices("resourceUrl", "driveUrl", "resource_url"))


class GenerateLinkRequest(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    resource_url: Optional[str] = Field(None, validation_alias=AliasChoices("resourceUrl", "driveUrl", "resource_url"))
    file_id: Optional[str] = Field(None, validation_alias=AliasChoices("fileId", "file_id"))
    quality: Optional[str] = Field(None, validation_alias=AliasChoices("qualityOption", "quality"))
    quick: bool = False


def analyze_file(info: FileInfo) -> dict:
    return analyze_video_quality(
        width=info.media.width,
        height=info.media.height,
        duration_millis=info.media.duration_millis,
        byte_size=info.byte_size,
        mime_type=info.mime_type,
    )


async def load_video(drive: DriveClient, file_id: str) -> FileInfo:
    """Fetch metadata and make sure the file exists and is a video."""
    info = await drive.get_file_info(file_id)
    if info is None:
        raise NotFoundError("The file could not be found or is not accessible", error="File not found")

    if not info.is_video:
        logger.warning(f"Rejected non-video file {file_id} ({info.mime_type})")
        raise InputError(f'The file is of type "{info.mime_type}", not a video', error="Not a video file")

    return info


def _require_file_id(url: Optional[str]) -> str:
    file_id = extract_file_id(url)
    if not file_id:
        raise InputError("Could not extract file ID from the provided URL", error="Invalid Google Drive URL")
    return file_id


@router.post("/analyze")
async def analyze(body: AnalyzeRequest, drive: DriveClient = Depends(get_drive)):
    """
    Analyze a cloud video and return its quality information.
    """
    if not body.resource_url:
        raise InputError("Please provide a Google Drive URL", error="Missing resourceUrl parameter")

    file_id = _require_file_id(body.resource_url)
    info = await load_video(drive, file_id)

    return {
        "success": True,
        "data": {
            "fileId": file_id,
            "name": info.name,
            "mimeType": info.mime_type,
            "quality": analyze_file(info),
        },
    }


@router.post("/generate-link")
async def generate_link(
    body: GenerateLinkRequest,
    codec: TokenCodec = Depends(get_codec),
    drive: DriveClient = Depends(get_drive),
    base_url: str = Depends(get_public_base_url),
):
    """
    Generate a tokenized .mp4 stream URL for a cloud video.

    A fileId from a previous analyze call skips URL parsing.
    """
    if body.file_id:
        file_id = body.file_id.strip()
    elif body.resource_url:
        file_id = _require_file_id(body.resource_url)
    else:
        raise InputError("Please provide a Google Drive URL or file ID", error="Missing resourceUrl or fileId parameter")

    info = await load_video(drive, file_id)
    quality_info = analyze_file(info)

    # Fall back to the original when the requested tier is not available
    requested = Quality.parse(body.quality).value
    options = quality_info["qualityOptions"]
    selected = next((o for o in options if o["id"] == requested), options[0])

    token = codec.issue_resource_token(file_id, selected["id"])
    stream_url = f"{base_url}/stream/{token}.mp4"
    logger.info(f"Generated stream link for {file_id} at {selected['id']}")

    if body.quick:
        return {
            "success": True,
            "data": {"streamUrl": stream_url, "quality": selected["id"], "name": info.name},
        }

    return {
        "success": True,
        "data": {
            "streamUrl": stream_url,
            "selectedQuality": selected,
            "fileInfo": {"name": info.name, "size": info.byte_size, "mimeType": info.mime_type},
            "quality": quality_info,
        },
    }


@router.get("/file-info/{file_id}")
async def file_info(file_id: str, drive: DriveClient = Depends(get_drive)):
    """
    Get normalized metadata for a cloud file.
    """
    info = await drive.get_file_info(file_id)
    if info is None:
        raise NotFoundError("The file could not be found or is not accessible", error="File not found")
    return {"success": True, "data": info.to_dict()}
