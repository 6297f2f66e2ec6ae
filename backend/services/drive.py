"""
Google Drive metadata lookup and media URLs.

Only two things are needed from the storage API: a file's metadata and a
URL that serves its bytes with Range support. Both go through the shared
httpx client.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote

import httpx

from core.config import GOOGLE_API_KEY, DRIVE_API_BASE, METADATA_CACHE_TTL_SECONDS
from core.errors import UpstreamError, UpstreamTimeout
from services.cache import TTLCache

logger = logging.getLogger(__name__)

METADATA_FIELDS = "id,name,size,mimeType,videoMediaMetadata"

_BARE_ID = re.compile(r"^[a-zA-Z0-9_-]{25,}$")
_ID_PATTERNS = [
    # https://drive.google.com/file/d/FILE_ID/view
    re.compile(r"/file/d/([a-zA-Z0-9_-]+)"),
    # https://drive.google.com/open?id=FILE_ID
    # https://drive.google.com/uc?export=download&id=FILE_ID
    re.compile(r"[?&]id=([a-zA-Z0-9_-]+)"),
    # Direct file ID in URL path
    re.compile(r"/([a-zA-Z0-9_-]{25,})"),
]


def extract_file_id(url: Optional[str]) -> Optional[str]:
    """Pull a file ID out of a share link, or accept a bare ID."""
    if not url:
        return None

    url = url.strip()
    if _BARE_ID.match(url):
        return url

    for pattern in _ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)

    return None


@dataclass(frozen=True)
class MediaMetadata:
    width: int = 0
    height: int = 0
    duration_millis: int = 0


@dataclass(frozen=True)
class FileInfo:
    id: str
    name: str
    byte_size: int
    mime_type: str
    media: MediaMetadata = field(default_factory=MediaMetadata)

    @property
    def is_video(self) -> bool:
        return bool(self.mime_type) and self.mime_type.startswith("video/")

    @classmethod
    def from_api(cls, data: dict) -> "FileInfo":
        media = data.get("videoMediaMetadata") or {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            byte_size=_to_int(data.get("size")),
            mime_type=data.get("mimeType") or "",
            media=MediaMetadata(
                width=_to_int(media.get("width")),
                height=_to_int(media.get("height")),
                duration_millis=_to_int(media.get("durationMillis")),
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "size": self.byte_size,
            "mimeType": self.mime_type,
            "videoMediaMetadata": {
                "width": self.media.width,
                "height": self.media.height,
                "durationMillis": self.media.duration_millis,
            },
        }


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class DriveClient:
    """
    Drive v3 client authenticated with an API key.

    Metadata lookups are cached in the injected TTLCache.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str = GOOGLE_API_KEY,
        cache: Optional[TTLCache] = None,
        api_base: str = DRIVE_API_BASE,
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.cache = cache if cache is not None else TTLCache(METADATA_CACHE_TTL_SECONDS, name="metadata cache")

        if not api_key:
            logger.warning("No Google Drive credentials configured (set GOOGLE_API_KEY)")

    def _file_url(self, file_id: str) -> str:
        return f"{self.api_base}/files/{quote(file_id, safe='')}"

    def media_url(self, file_id: str) -> str:
        """URL that serves the file's bytes (Range aware)."""
        self._require_credentials()
        return f"{self._file_url(file_id)}?alt=media&supportsAllDrives=true&key={quote(self.api_key, safe='')}"

    def _require_credentials(self):
        if not self.api_key:
            raise UpstreamError("Storage backend is not configured")

    async def get_file_info(self, file_id: str, skip_cache: bool = False) -> Optional[FileInfo]:
        """
        Fetch file metadata. Returns None when the file does not exist or
        is not accessible.
        """
        self._require_credentials()

        if not skip_cache:
            cached = self.cache.get(file_id)
            if cached is not None:
                logger.info(f"Cache hit for file: {file_id}")
                return cached

        params = {"fields": METADATA_FIELDS, "supportsAllDrives": "true", "key": self.api_key}
        try:
            response = await self.http_client.get(self._file_url(file_id), params=params)
        except httpx.TimeoutException:
            logger.error(f"Timed out getting file info for {file_id}")
            raise UpstreamTimeout("The storage backend took too long to respond")
        except httpx.HTTPError as e:
            logger.error(f"Error getting file info for {file_id}: {e!r}")
            raise UpstreamError("Failed to reach the storage backend")

        if response.status_code == 404:
            logger.info(f"File not found: {file_id}")
            return None
        if response.status_code >= 400:
            logger.error(f"Drive API responded {response.status_code} for {file_id}: {response.text[:200]}")
            raise UpstreamError(f"Storage backend responded with status {response.status_code}")

        try:
            info = FileInfo.from_api(response.json())
        except ValueError:
            logger.error(f"Drive API returned invalid JSON for {file_id}")
            raise UpstreamError("Storage backend returned an invalid response")

        self.cache.put(file_id, info)
        return info
