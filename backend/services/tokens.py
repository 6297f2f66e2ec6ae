"""
Capability tokens for stream links.

A token carries everything needed to authorize a stream: what to fetch,
how to fetch it, when the link stops working, and an HMAC signature
over all of that. Nothing is stored server side; the optional cache only
skips re-verification of tokens that were already verified.

Wire format (every field is URL-safe, fields are joined with '.'):

    r.<b64 resource id>.<quality>.<expires_at>.<signature>
    p.<b64 source url>.<flags>.<media kind>.<expires_at>.<signature>

The signature is HMAC-SHA256 over everything before the last '.',
truncated to SIGNATURE_BYTES and base64url encoded without padding.
"""
import hmac
import time
import base64
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from core.config import STREAM_SECRET, TOKEN_TTL_SECONDS, SIGNATURE_BYTES
from services.cache import TTLCache

logger = logging.getLogger(__name__)


# ============================================================================
# Token Payload Types
# ============================================================================

class Quality(str, Enum):
    ORIGINAL = "original"
    P1080 = "1080p"
    P720 = "720p"
    P480 = "480p"
    P360 = "360p"

    @classmethod
    def parse(cls, value) -> "Quality":
        """Map any input to a quality, falling back to the original."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.ORIGINAL


class MediaKind(str, Enum):
    HLS = "HLS"
    DASH = "DASH"
    MP4 = "MP4"
    WEBM = "WebM"
    MKV = "MKV"
    SEGMENT = "segment"
    GENERIC = "generic"

    @classmethod
    def parse(cls, value) -> "MediaKind":
        if isinstance(value, cls):
            return value
        for kind in cls:
            if str(value).lower() == kind.value.lower():
                return kind
        return cls.GENERIC


def detect_stream_type(url: str) -> MediaKind:
    """Guess the media kind of an external URL from its text."""
    url_lower = url.lower()
    if ".m3u8" in url_lower or "hls" in url_lower:
        return MediaKind.HLS
    if ".mpd" in url_lower or "dash" in url_lower:
        return MediaKind.DASH
    if ".mp4" in url_lower:
        return MediaKind.MP4
    if ".webm" in url_lower:
        return MediaKind.WEBM
    if ".mkv" in url_lower:
        return MediaKind.MKV
    return MediaKind.GENERIC


@dataclass(frozen=True)
class ProxyOptions:
    buffering: bool = True
    proxy_enabled: bool = True
    media_kind: MediaKind = MediaKind.GENERIC

    def with_kind(self, media_kind: MediaKind) -> "ProxyOptions":
        return ProxyOptions(self.buffering, self.proxy_enabled, media_kind)


@dataclass(frozen=True)
class ResourceGrant:
    """Permission to stream one internal resource at one quality."""
    resource_id: str
    quality: Quality
    expires_at: int


@dataclass(frozen=True)
class ProxyGrant:
    """Permission to relay one external URL with the given options."""
    source_url: str
    options: ProxyOptions = field(default_factory=ProxyOptions)
    expires_at: int = 0


Grant = Union[ResourceGrant, ProxyGrant]


# ============================================================================
# Encoding Helpers
# ============================================================================

_RESOURCE_KIND = "r"
_PROXY_KIND = "p"

_QUALITY_CODES = {
    Quality.ORIGINAL: "o",
    Quality.P1080: "1080",
    Quality.P720: "720",
    Quality.P480: "480",
    Quality.P360: "360",
}
_QUALITY_BY_CODE = {code: q for q, code in _QUALITY_CODES.items()}

_MEDIA_CODES = {
    MediaKind.HLS: "h",
    MediaKind.DASH: "d",
    MediaKind.MP4: "m",
    MediaKind.WEBM: "w",
    MediaKind.MKV: "k",
    MediaKind.SEGMENT: "s",
    MediaKind.GENERIC: "g",
}
_MEDIA_BY_CODE = {code: k for k, code in _MEDIA_CODES.items()}

_FLAG_BUFFERING = 1
_FLAG_PROXY = 2


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _parse_uint(text: str) -> Optional[int]:
    if not text or not text.isascii() or not text.isdigit():
        return None
    return int(text)


# ============================================================================
# Token Codec
# ============================================================================

class TokenCodec:
    """
    Issues and verifies capability tokens.

    The clock and cache are injectable so tests can run with a fake
    clock and isolated cache instances.
    """

    def __init__(
        self,
        secret: str = STREAM_SECRET,
        ttl_seconds: int = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        cache: Optional[TTLCache] = None,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._ttl = int(ttl_seconds)
        self._clock = clock
        self.cache = cache

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def issue(self, resource_ref: str, option: Union[str, Quality, ProxyOptions, None] = None) -> str:
        """Issue a proxy token for ProxyOptions, otherwise a resource token."""
        if isinstance(option, ProxyOptions):
            return self.issue_proxy_token(resource_ref, option)
        return self.issue_resource_token(resource_ref, option)

    def issue_resource_token(self, resource_id: str, quality: Union[str, Quality, None] = None) -> str:
        quality = Quality.parse(quality) if quality is not None else Quality.ORIGINAL
        body = ".".join([
            _RESOURCE_KIND,
            _b64encode(resource_id.encode("utf-8")),
            _QUALITY_CODES[quality],
            str(self._expiry()),
        ])
        return f"{body}.{self._sign(body)}"

    def issue_proxy_token(self, source_url: str, options: Optional[ProxyOptions] = None) -> str:
        options = options or ProxyOptions()
        flags = (_FLAG_BUFFERING if options.buffering else 0) | (_FLAG_PROXY if options.proxy_enabled else 0)
        body = ".".join([
            _PROXY_KIND,
            _b64encode(source_url.encode("utf-8")),
            str(flags),
            _MEDIA_CODES[MediaKind.parse(options.media_kind)],
            str(self._expiry()),
        ])
        return f"{body}.{self._sign(body)}"

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str) -> Optional[Grant]:
        """
        Decode and check a token of either kind.

        Returns None for anything malformed, tampered with or expired.
        Never raises.
        """
        if not token or not isinstance(token, str):
            return None

        now = self._clock()

        if self.cache is not None:
            cached = self.cache.get(token)
            if cached is not None:
                if now < cached.expires_at:
                    return cached
                self.cache.remove(token)
                return None

        try:
            grant = self._decode(token)
        except (ValueError, UnicodeError) as e:
            logger.debug(f"Rejected undecodable token: {e}")
            return None

        if grant is None:
            return None

        if now >= grant.expires_at:
            logger.info("Rejected expired stream token")
            return None

        if self.cache is not None:
            self.cache.put(token, grant, expires_at=grant.expires_at)
        return grant

    def verify_resource(self, token: str) -> Optional[ResourceGrant]:
        grant = self.verify(token)
        return grant if isinstance(grant, ResourceGrant) else None

    def verify_proxy(self, token: str) -> Optional[ProxyGrant]:
        grant = self.verify(token)
        return grant if isinstance(grant, ProxyGrant) else None

    def _decode(self, token: str) -> Optional[Grant]:
        body, sep, signature = token.rpartition(".")
        if not sep or not body:
            return None

        if not hmac.compare_digest(signature.encode("ascii", "replace"), self._sign(body).encode("ascii")):
            logger.warning("Rejected stream token with bad signature")
            return None

        parts = body.split(".")
        kind = parts[0]

        if kind == _RESOURCE_KIND:
            if len(parts) != 4:
                return None
            _, encoded_id, quality_code, expiry_text = parts
            quality = _QUALITY_BY_CODE.get(quality_code)
            expires_at = _parse_uint(expiry_text)
            if quality is None or expires_at is None:
                return None
            resource_id = _b64decode(encoded_id).decode("utf-8")
            if not resource_id:
                return None
            return ResourceGrant(resource_id=resource_id, quality=quality, expires_at=expires_at)

        if kind == _PROXY_KIND:
            if len(parts) != 5:
                return None
            _, encoded_url, flags_text, media_code, expiry_text = parts
            flags = _parse_uint(flags_text)
            media_kind = _MEDIA_BY_CODE.get(media_code)
            expires_at = _parse_uint(expiry_text)
            if flags is None or media_kind is None or expires_at is None:
                return None
            source_url = _b64decode(encoded_url).decode("utf-8")
            if not source_url:
                return None
            options = ProxyOptions(
                buffering=bool(flags & _FLAG_BUFFERING),
                proxy_enabled=bool(flags & _FLAG_PROXY),
                media_kind=media_kind,
            )
            return ProxyGrant(source_url=source_url, options=options, expires_at=expires_at)

        return None

    def _expiry(self) -> int:
        return int(self._clock()) + self._ttl

    def _sign(self, body: str) -> str:
        digest = hmac.new(self._secret, body.encode("utf-8"), hashlib.sha256).digest()
        return _b64encode(digest[:SIGNATURE_BYTES])
