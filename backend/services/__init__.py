"""
Services module exports.
"""
from services.cache import TTLCache, cache_cleanup_task
from services.drive import DriveClient, FileInfo, extract_file_id
from services.manifest import is_playlist, rewrite_hls_manifest
from services.quality import analyze_video_quality
from services.ranges import ResolvedRange, parse_range_header, resolve_range
from services.relay import RelayState, StreamRelay, create_upstream_client
from services.tokens import (
    MediaKind,
    ProxyGrant,
    ProxyOptions,
    Quality,
    ResourceGrant,
    TokenCodec,
    detect_stream_type,
)

__all__ = [
    "TTLCache",
    "cache_cleanup_task",
    "DriveClient",
    "FileInfo",
    "extract_file_id",
    "is_playlist",
    "rewrite_hls_manifest",
    "analyze_video_quality",
    "ResolvedRange",
    "parse_range_header",
    "resolve_range",
    "RelayState",
    "StreamRelay",
    "create_upstream_client",
    "MediaKind",
    "ProxyGrant",
    "ProxyOptions",
    "Quality",
    "ResourceGrant",
    "TokenCodec",
    "detect_stream_type",
]
