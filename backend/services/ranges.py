"""
HTTP Range header resolution against a known resource size.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from core.errors import RangeNotSatisfiable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedRange:
    start: int
    end: int  # inclusive; -1 for an empty full response
    total_size: int
    is_partial: bool

    @property
    def content_length(self) -> int:
        return self.end - self.start + 1

    @property
    def status_code(self) -> int:
        return 206 if self.is_partial else 200

    @property
    def covers_whole_resource(self) -> bool:
        return self.start == 0 and self.end == self.total_size - 1

    def response_headers(self) -> Dict[str, str]:
        headers = {"Content-Length": str(self.content_length)}
        if self.is_partial:
            headers["Content-Range"] = f"bytes {self.start}-{self.end}/{self.total_size}"
        return headers

    def upstream_range_header(self) -> Optional[str]:
        """Range header to send upstream, or None for a plain full fetch."""
        if not self.is_partial:
            return None
        return f"bytes={self.start}-{self.end}"


def parse_range_header(range_header: str) -> Optional[Tuple[Optional[int], Optional[int]]]:
    """
    Parse 'bytes=12345-', 'bytes=12345-67890' or 'bytes=-500'.

    Returns (start, end) where either side may be None, or None when the
    header is not a byte range we understand. Only the first range of a
    multi-range header is looked at.
    """
    if not range_header:
        return None

    unit, sep, range_set = range_header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        return None

    first = range_set.split(",")[0].strip()
    start_text, dash, end_text = first.partition("-")
    if not dash:
        return None

    start_text, end_text = start_text.strip(), end_text.strip()
    if not start_text and not end_text:
        return None
    for text in (start_text, end_text):
        if text and not (text.isascii() and text.isdigit()):
            return None

    start = int(start_text) if start_text else None
    end = int(end_text) if end_text else None
    return (start, end)


def resolve_range(range_header: Optional[str], total_size: int) -> ResolvedRange:
    """
    Work out which bytes to send for a request.

    No header (or one we cannot parse) means the whole resource with 200.
    A byte range means 206. A start at or past the end of the resource, or
    a start after the end, raises RangeNotSatisfiable. An end past the last
    byte is shortened to the last byte, which still serves the exact bytes
    asked for that exist.
    """
    if total_size < 0:
        raise ValueError("total_size must not be negative")

    parsed = parse_range_header(range_header) if range_header else None
    if parsed is None:
        if range_header:
            logger.info(f"Ignoring unsupported Range header: {range_header[:80]}")
        return ResolvedRange(start=0, end=total_size - 1, total_size=total_size, is_partial=False)

    start, end = parsed

    if start is None:
        # Suffix range: the last N bytes
        if end == 0 or total_size == 0:
            raise RangeNotSatisfiable(total_size)
        start = max(total_size - end, 0)
        end = total_size - 1
    else:
        if start >= total_size:
            logger.warning(f"Range start {start} beyond size {total_size}")
            raise RangeNotSatisfiable(total_size)
        if end is None:
            end = total_size - 1
        elif start > end:
            logger.warning(f"Range start {start} after end {end}")
            raise RangeNotSatisfiable(total_size, "Range start is after range end")
        else:
            end = min(end, total_size - 1)

    return ResolvedRange(start=start, end=end, total_size=total_size, is_partial=True)
