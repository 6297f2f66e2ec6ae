"""
Core module exports.
"""
from core.config import (
    STREAM_SECRET,
    TOKEN_TTL_SECONDS,
    UPSTREAM_TIMEOUT_SECONDS,
    BASE_URL,
    METADATA_CACHE_TTL_SECONDS,
)
from core.errors import (
    StreamError,
    InputError,
    NotFoundError,
    TokenError,
    RangeNotSatisfiable,
    UpstreamError,
    UpstreamTimeout,
)
from core.security import get_base_url, validate_source_url

__all__ = [
    "STREAM_SECRET",
    "TOKEN_TTL_SECONDS",
    "UPSTREAM_TIMEOUT_SECONDS",
    "BASE_URL",
    "METADATA_CACHE_TTL_SECONDS",
    "StreamError",
    "InputError",
    "NotFoundError",
    "TokenError",
    "RangeNotSatisfiable",
    "UpstreamError",
    "UpstreamTimeout",
    "get_base_url",
    "validate_source_url",
]
