"""Request tracing and API-key checks for the scheduling API."""

import hmac
import logging
import re
import time
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from careslot.observability import SchedulingEventLogger, bind_request_id, reset_request_id

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_PROVIDER_PATH = re.compile(r"/providers/([^/]+)")


def provider_for(request: Request) -> Optional[str]:
    """Provider a request is about, when the URL names one."""
    match = _PROVIDER_PATH.search(request.url.path)
    if match:
        return match.group(1)
    return request.query_params.get("provider_id")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Give each request an id and log its outcome.

    The id comes from ``X-Request-ID`` when the caller sends one. It is
    echoed on the response and stamped on every scheduling event the
    request produces. Failed requests log the scheduling error code the
    API handler recorded on ``request.state``.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = (
            request.headers.get(REQUEST_ID_HEADER)
            or SchedulingEventLogger.generate_request_id()
        )
        request.state.request_id = request_id
        token = bind_request_id(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        elapsed = time.perf_counter() - started

        error_code = getattr(request.state, "error_code", None)
        log = logger.warning if error_code else logger.info
        log(
            "%s %s -> %d in %.3fs request_id=%s provider=%s%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            request_id,
            provider_for(request) or "-",
            f" error={error_code}" if error_code else "",
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.3f}"
        return response


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Reject scheduling calls without the configured key.

    Health checks and the OpenAPI docs stay open.
    """

    open_prefixes = ("/health", "/docs", "/openapi.json")

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    @staticmethod
    def _presented_key(request: Request) -> str:
        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth.removeprefix("Bearer ")
        return request.headers.get("X-API-Key", "")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.open_prefixes):
            return await call_next(request)

        presented = self._presented_key(request)
        if presented and hmac.compare_digest(presented, self.api_key):
            return await call_next(request)

        logger.warning(
            "Rejected %s %s without a valid API key provider=%s",
            request.method, request.url.path, provider_for(request) or "-",
        )
        return JSONResponse(
            status_code=401,
            content={"error": "unauthorized", "detail": "Invalid or missing API key"},
        )
