"""
HLS playlist rewriting so every media reference goes back through the relay.
"""
import logging
from typing import Callable, Optional
from urllib.parse import urljoin, urlparse

logger = logging.getLogger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
PLAYLIST_EXTENSIONS = (".m3u8", ".m3u")
COMMENT_MARKER = "#"


def is_playlist(content_type: Optional[str], url: str = "") -> bool:
    """
    True when an upstream response is an HLS playlist.

    The declared content type decides; a response with no content type
    falls back to the URL's extension.
    """
    ctype = (content_type or "").lower()
    if "mpegurl" in ctype:
        return True
    if not ctype:
        return urlparse(url).path.lower().endswith(PLAYLIST_EXTENSIONS)
    return False


def resolve_reference(reference: str, manifest_url: str) -> str:
    """Absolute URL for a playlist entry, relative to the playlist itself."""
    if urlparse(reference).scheme:
        return reference
    return urljoin(manifest_url, reference)


def rewrite_hls_manifest(content: str, manifest_url: str, make_segment_url: Callable[[str], str]) -> str:
    """
    Rewrite media references in an HLS playlist.

    Each non-blank line that is not a tag or comment is resolved against
    ``manifest_url`` and replaced with ``make_segment_url(absolute_url)``.
    Every other line is copied unchanged, so the output has exactly as
    many lines as the input.
    """
    lines = content.split("\n")
    result = []
    rewritten = 0

    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith(COMMENT_MARKER):
            result.append(line)
            continue

        absolute_url = resolve_reference(stripped, manifest_url)
        ending = "\r" if line.endswith("\r") else ""
        result.append(make_segment_url(absolute_url) + ending)
        rewritten += 1

    logger.info(f"Rewrote {rewritten} playlist entries for {manifest_url[:100]}")
    return "\n".join(result)
