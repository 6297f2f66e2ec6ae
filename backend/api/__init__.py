"""
API routes module.
"""
from api.routes.links import router as links_router
from api.routes.stream import router as stream_router
from api.routes.universal import router as universal_router

__all__ = ["links_router", "stream_router", "universal_router"]
