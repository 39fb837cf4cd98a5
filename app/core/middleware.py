"""Shared FastAPI middleware."""

from __future__ import annotations

from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from app.core.config import get_settings


class MaxBodySizeMiddleware(BaseHTTPMiddleware):
    """
    Reject requests with bodies larger than MAX_REQUEST_BODY_BYTES.

    Media never travels through the API (clients upload to S3 and send a
    key), so job and webhook bodies are small.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Response]) -> Response:
        limit = int(get_settings().MAX_REQUEST_BODY_BYTES)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > limit:
            return JSONResponse({"detail": "Payload too large."}, status_code=413)

        # Chunked bodies carry no content-length; Starlette caches the body
        # so handlers can still read it.
        body = await request.body()
        if len(body) > limit:
            return JSONResponse({"detail": "Payload too large."}, status_code=413)

        return await call_next(request)
