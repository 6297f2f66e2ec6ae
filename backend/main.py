"""
StreamFreely Backend - Main Application

This is the entry point for the FastAPI application.
Most logic lives in:
- core/: Configuration, error taxonomy and security utilities
- services/: Tokens, quality analysis, ranges, playlist rewriting, relay
- api/routes/: REST and streaming endpoints
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse, Response

from core.config import (
    ALLOWED_ORIGINS,
    BASE_URL,
    BLOCK_PRIVATE_NETWORKS,
    DEFAULT_STREAM_SECRET,
    METADATA_CACHE_TTL_SECONDS,
    STREAM_SECRET,
    TOKEN_TTL_SECONDS,
)
from core.errors import StreamError
from services.cache import TTLCache, cache_cleanup_task
from services.drive import DriveClient
from services.relay import StreamRelay, create_upstream_client
from services.tokens import TokenCodec
from api.routes.links import router as links_router
from api.routes.stream import router as stream_router
from api.routes.universal import router as universal_router

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ============================================================================
# Error Handlers
# ============================================================================

async def stream_error_handler(request: Request, exc: StreamError):
    """Turn a taxonomy error into a structured JSON response."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")

    if request.method == "HEAD":
        return Response(status_code=exc.status_code, headers=exc.headers)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


async def unhandled_error_handler(request: Request, exc: Exception):
    """Never leak internals to the client; keep the traceback in the log."""
    logger.exception(f"Unhandled error for {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ============================================================================
# App Initialization
# ============================================================================

def create_app(
    codec: Optional[TokenCodec] = None,
    drive: Optional[DriveClient] = None,
    relay: Optional[StreamRelay] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    base_url: Optional[str] = BASE_URL,
    block_private_networks: bool = BLOCK_PRIVATE_NETWORKS,
) -> FastAPI:
    """
    Build an app around its own codec, caches, storage client and relay.

    Anything not passed in is created from configuration. Tests pass
    their own collaborators to stay isolated from each other.
    """
    http_client = http_client or create_upstream_client()
    token_cache = TTLCache(TOKEN_TTL_SECONDS, max_entries=10_000, name="token cache")
    metadata_cache = TTLCache(METADATA_CACHE_TTL_SECONDS, name="metadata cache")

    if codec is None:
        if STREAM_SECRET == DEFAULT_STREAM_SECRET:
            logger.warning("STREAM_SECRET is not set; using the development default")
        codec = TokenCodec(STREAM_SECRET, TOKEN_TTL_SECONDS, cache=token_cache)
    drive = drive or DriveClient(http_client, cache=metadata_cache)
    relay = relay or StreamRelay(http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - start/stop background tasks."""
        caches = [c for c in (codec.cache, drive.cache) if c is not None]
        tasks = [asyncio.create_task(cache_cleanup_task(caches))]
        logger.info("Started background tasks: cache cleanup")
        yield

        # Cancel and await all background tasks
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when task is cancelled
            except Exception as e:
                logger.warning(f"Error during task shutdown: {e}")

        logger.info("All background tasks shut down cleanly")

        # Clean up HTTP clients
        await relay.aclose()
        if drive.http_client is not relay.client:
            await drive.http_client.aclose()
        logger.info("Closed upstream HTTP client")

    app = FastAPI(title="StreamFreely Backend", lifespan=lifespan)
    app.state.codec = codec
    app.state.drive = drive
    app.state.relay = relay
    app.state.base_url = base_url
    app.state.block_private_networks = block_private_networks

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True if ALLOWED_ORIGINS != ["*"] else False,
        allow_methods=["GET", "HEAD", "POST", "OPTIONS"],
        allow_headers=["Range", "Content-Type", "Authorization"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "Content-Type"],
    )

    app.add_exception_handler(StreamError, stream_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Include API routers
    app.include_router(links_router)
    app.include_router(stream_router)
    app.include_router(universal_router)

    @app.get("/")
    def read_root():
        """Health check endpoint."""
        return {"status": "ok", "service": "StreamFreely Backend"}

    @app.get("/health")
    def health():
        return {"status": "ok", "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())}

    return app


app = create_app()


# ============================================================================
# Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
