import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from vmdash.core.logging import request_id_ctx_var, latency_bucket_ms

# Liveness/readiness probes are polled constantly
QUIET_PATHS = frozenset({"/healthz", "/readyz"})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Attach a request_id to each request and log completion.

    The completion record carries the caller's account id (X-User-Id) so a
    billing or VM action can be traced back to who asked for it.
    """

    def __init__(self, app, header_name: str = "x-request-id", account_header: str = "x-user-id"):
        super().__init__(app)
        self.header_name = header_name
        self.account_header = account_header

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        duration_ms = (time.perf_counter() - start) * 1000

        response.headers[self.header_name] = rid

        status = getattr(response, "status_code", None)
        if request.url.path in QUIET_PATHS:
            level = logging.DEBUG
        elif status is not None and status >= 500:
            level = logging.WARNING
        else:
            level = logging.INFO

        logging.getLogger("vmdash").log(
            level,
            "request.complete",
            extra={
                "request_id": rid,
                "account_id": request.headers.get(self.account_header),
                "path": request.url.path,
                "method": request.method,
                "status": status,
                "latency_bucket": latency_bucket_ms(duration_ms),
            },
        )
        return response
