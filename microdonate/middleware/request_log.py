import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger("microdonate.access")


class RequestLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s failed", request.method, request.url.path)
            raise
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            "%s %s -> %s user=%s ip=%s %dms",
            request.method,
            request.url.path,
            response.status_code,
            getattr(request.state, "user_id", None),
            request.client.host if request.client else None,
            latency_ms,
        )
        return response
