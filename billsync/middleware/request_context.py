"""Bind per-request context into structlog contextvars.

Every log line emitted while handling a request carries ``request_id``,
``method`` and ``path``. An incoming ``X-Request-ID`` is reused; otherwise a
new id is generated. The id is echoed back on the response.
"""
from __future__ import annotations

import uuid
from typing import Callable

import structlog
from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"


async def request_context_middleware(request: Request, call_next: Callable):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.clear_contextvars()

    response.headers[REQUEST_ID_HEADER] = request_id
    return response
