"""
Error taxonomy for the streaming proxy.

Every failure that reaches the HTTP layer is one of these. The exception
handler in main.py turns them into a JSON body of the form
``{"error": ..., "message": ...}`` with the matching status code.
"""
from typing import Dict, Optional


class StreamError(Exception):
    """Base class for errors that are safe to show to the client."""

    status_code = 500
    error = "Stream error"

    def __init__(self, message: str = "", error: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error
        if error is not None:
            self.error = error

    @property
    def headers(self) -> Dict[str, str]:
        return {}

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message}


class InputError(StreamError):
    status_code = 400
    error = "Invalid request"


class NotFoundError(StreamError):
    status_code = 404
    error = "Not found"


class TokenError(StreamError):
    """Malformed, tampered or expired token. The reason is never disclosed."""

    status_code = 400
    error = "Invalid or expired token"

    def __init__(self):
        super().__init__("The stream link is invalid or has expired")


class RangeNotSatisfiable(StreamError):
    status_code = 416
    error = "Range not satisfiable"

    def __init__(self, total_size: int, message: str = ""):
        super().__init__(message or f"Requested range is outside of 0-{max(total_size - 1, 0)}")
        self.total_size = total_size

    @property
    def headers(self) -> Dict[str, str]:
        return {"Content-Range": f"bytes */{self.total_size}"}


class UpstreamError(StreamError):
    status_code = 502
    error = "Stream failed"


class UpstreamTimeout(StreamError):
    status_code = 504
    error = "Stream timeout"

    def __init__(self, message: str = "The source took too long to respond"):
        super().__init__(message)


class StreamAborted(Exception):
    """
    Failure after the response has started.

    Not a StreamError: a second status can no longer be sent, so this is
    raised out of the body iterator and the client connection is dropped.
    """
