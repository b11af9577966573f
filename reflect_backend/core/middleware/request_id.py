import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from reflect_backend.core.logging import request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"
MAX_INBOUND_ID_CHARS = 128

logger = logging.getLogger("reflect")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for the lifetime of each request and echo it back."""

    async def dispatch(self, request, call_next):
        inbound = request.headers.get(REQUEST_ID_HEADER, "").strip()
        rid = inbound[:MAX_INBOUND_ID_CHARS] if inbound else uuid4().hex
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            logger.info(
                "http.request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
