import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from roleplay_api.log import get_logger, log_event

logger = get_logger("roleplay.api.request")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-Id, persists on request.state, and echoes on response.

    Also emits one JSON log line per request with method, path, status and latencyMs.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-Id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        req_id = (request.headers.get(self.header_name) or "").strip() or str(uuid.uuid4())
        request.state.request_id = req_id

        response = await call_next(request)
        response.headers[self.header_name] = req_id

        log_event(
            logger,
            "http_request",
            requestId=req_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latencyMs=int((time.perf_counter() - start) * 1000),
        )
        return response
