"""
Security utilities for the StreamFreely backend.
"""
import socket
import asyncio
import logging
import ipaddress
from typing import Optional
from urllib.parse import urlparse

from core.errors import InputError

logger = logging.getLogger(__name__)


def _is_blocked_address(address: str) -> bool:
    addr = ipaddress.ip_address(address)
    return addr.is_private or addr.is_reserved or addr.is_loopback or addr.is_link_local


async def _is_private_ip(hostname: str) -> bool:
    """Check if a hostname resolves to a private/reserved IP address."""
    try:
        return _is_blocked_address(hostname)
    except ValueError:
        # Not an IP literal - resolve hostname without blocking the event loop
        try:
            resolved = await asyncio.get_running_loop().getaddrinfo(hostname, None)
            for family, _type, _proto, _canonname, sockaddr in resolved:
                if _is_blocked_address(sockaddr[0].split("%")[0]):
                    return True
        except socket.gaierror:
            return True  # Can't resolve = block
    return False


async def validate_source_url(url: str, block_private: bool = True) -> str:
    """
    Validate an external source URL before it is tokenized or fetched.

    Raises InputError when the URL is not absolute http(s), has no host,
    or (with block_private) points at an internal network.
    """
    if not url or not url.strip():
        raise InputError("Please provide a streaming URL", error="Missing sourceUrl parameter")

    url = url.strip()
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise InputError("Please provide a valid streaming URL", error="Invalid URL")

    if not parsed.hostname:
        raise InputError("Please provide a valid streaming URL", error="Invalid URL")

    if block_private and await _is_private_ip(parsed.hostname):
        logger.warning(f"Rejected source URL on internal network: {parsed.hostname}")
        raise InputError("Access to internal networks is not allowed", error="Invalid URL")

    return url


def get_base_url(request, configured: Optional[str] = None) -> str:
    """
    Work out the public base URL used to build stream links.

    Forwarded headers set by a reverse proxy win, then the configured
    BASE_URL, then the Host header of the request itself.
    """
    forwarded_host = request.headers.get("x-forwarded-host")
    forwarded_proto = request.headers.get("x-forwarded-proto")

    if forwarded_host:
        proto = (forwarded_proto or request.url.scheme or "https").split(",")[0].strip()
        host = forwarded_host.split(",")[0].strip()
        return f"{proto}://{host}"

    if configured:
        return configured.rstrip("/")

    host = request.headers.get("host") or request.url.netloc
    proto = (forwarded_proto or request.url.scheme or "http").split(",")[0].strip()
    return f"{proto}://{host}"
