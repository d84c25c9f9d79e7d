import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .errors import TooLargeError

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests, please try again later."


class RateLimiter:
    """
    Simple in-memory rate limiter using a fixed window algorithm.
    Tracks requests per client identifier within a time window.
    """

    def __init__(self, max_requests: int, window_seconds: float = 900.0, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # identifier -> (count, window_start_time)
        self.requests: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def is_allowed(self, identifier: str) -> bool:
        now = self._clock()
        with self._lock:
            count, start_time = self.requests.get(identifier, (0, now))

            if now - start_time >= self.window_seconds:
                # New window
                self.requests[identifier] = (1, now)
                return True

            if count >= self.max_requests:
                return False

            self.requests[identifier] = (count + 1, start_time)
            return True

    def cleanup(self) -> int:
        """Drop identifiers whose window has ended."""
        now = self._clock()
        with self._lock:
            stale = [key for key, (_, start) in self.requests.items() if now - start >= self.window_seconds]
            for key in stale:
                del self.requests[key]
        return len(stale)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP rate limiting for the API.

    Every ``/api/`` request counts against ``api_limiter``; uploads also count
    against the stricter ``upload_limiter``.
    """

    def __init__(
        self,
        app,
        api_limiter: RateLimiter,
        upload_limiter: Optional[RateLimiter] = None,
        upload_path: str = "/api/upload",
    ):
        super().__init__(app)
        self.api_limiter = api_limiter
        self.upload_limiter = upload_limiter
        self.upload_path = upload_path

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not path.startswith("/api/"):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        if not self.api_limiter.is_allowed(client):
            logger.warning(f"Rate limit exceeded for {client} on {path}")
            return JSONResponse(status_code=429, content={"error": RATE_LIMIT_MESSAGE})
        if self.upload_limiter is not None and path == self.upload_path and request.method == "POST":
            if not self.upload_limiter.is_allowed(client):
                logger.warning(f"Upload rate limit exceeded for {client}")
                return JSONResponse(status_code=429, content={"error": RATE_LIMIT_MESSAGE})
        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative security headers to every response."""

    HEADERS = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "no-referrer",
    }

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in self.HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class BodySizeLimitMiddleware:
    """
    Caps the size of request bodies other than multipart uploads.

    A declared Content-Length over the cap is answered with 400 straight
    away. A body sent without one is counted as it arrives and the request
    fails once it overruns.
    """

    def __init__(self, app: ASGIApp, max_bytes: int, exempt_content_type: str = "multipart/form-data"):
        self.app = app
        self.max_bytes = max_bytes
        self.exempt_content_type = exempt_content_type
        self.message = f"Request body too large. Maximum size is {max_bytes / (1024 * 1024):g}MB."

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if headers.get("content-type", "").startswith(self.exempt_content_type):
            await self.app(scope, receive, send)
            return

        declared = headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_bytes:
            logger.warning(f"Rejected {declared}-byte body on {scope['path']}")
            response = JSONResponse(status_code=400, content={"error": self.message})
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    raise TooLargeError(self.message)
            return message

        await self.app(scope, limited_receive, send)
