"""
Request dependencies for the API routes.

Collaborators are owned by the app (see create_app in main.py) and looked
up from app.state, so every app instance is isolated.
"""
from fastapi import Request

from core.security import get_base_url
from services.drive import DriveClient
from services.relay import StreamRelay
from services.tokens import TokenCodec


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.codec


def get_drive(request: Request) -> DriveClient:
    return request.app.state.drive


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


def get_public_base_url(request: Request) -> str:
    return get_base_url(request, request.app.state.base_url)
