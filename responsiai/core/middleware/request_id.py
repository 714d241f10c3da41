import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from responsiai.core.logging import bound_request_id

logger = logging.getLogger("responsiai.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id per request, echo it back, log the outcome."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or uuid4().hex
        request.state.request_id = rid

        started = time.perf_counter()
        with bound_request_id(rid):
            response = await call_next(request)
            response.headers[self.header_name] = rid
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
        return response
