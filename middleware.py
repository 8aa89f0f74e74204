import logging
import time
from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again after 15 minutes"

SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self';base-uri 'self';font-src 'self' https: data:;"
        "form-action 'self';frame-ancestors 'self';img-src 'self' data:;"
        "object-src 'none';script-src 'self';script-src-attr 'none';"
        "style-src 'self' https: 'unsafe-inline';upgrade-insecure-requests"
    ),
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds a fixed set of hardening headers to every response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Innermost catch-all: turns an unhandled exception into a response.

    Errors the app's exception handlers already answered never reach here, so the
    outer middleware (headers, CORS, logging, rate limit) sees every 500 too.
    """

    def __init__(self, app, handler):
        super().__init__(app)
        self.handler = handler

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return await self.handler(request, exc)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log line per request.

    ``combined`` mimics the Apache combined log format and is used in production;
    ``dev`` is the short coloured-terminal style without colours.
    """

    def __init__(self, app, log_format: str = "dev"):
        super().__init__(app)
        self.log_format = log_format

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"
        length = response.headers.get("content-length", "-")

        if self.log_format == "combined":
            logger.info(
                '%s - - [%s] "%s %s HTTP/%s" %s %s "%s" "%s"',
                client_ip(request),
                datetime.now(timezone.utc).strftime("%d/%b/%Y:%H:%M:%S +0000"),
                request.method,
                path,
                request.scope.get("http_version", "1.1"),
                response.status_code,
                length,
                request.headers.get("referer", "-"),
                request.headers.get("user-agent", "-"),
            )
        else:
            logger.info(
                "%s %s %s %.3f ms - %s", request.method, path, response.status_code, elapsed_ms, length
            )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP request limit applied ahead of every route.

    Counts live in process memory, so each app instance has its own window.
    """

    def __init__(self, app, limit: str = "100 per 15 minutes"):
        super().__init__(app)
        self.item = parse(limit)
        self.limiter = MovingWindowRateLimiter(MemoryStorage())

    def _headers(self, key: str) -> dict:
        stats = self.limiter.get_window_stats(self.item, key)
        reset_in = max(0, int(stats.reset_time - time.time()))
        return {
            "RateLimit-Limit": str(self.item.amount),
            "RateLimit-Remaining": str(max(0, stats.remaining)),
            "RateLimit-Reset": str(reset_in),
        }

    async def dispatch(self, request: Request, call_next):
        key = client_ip(request)

        if not self.limiter.hit(self.item, key):
            headers = self._headers(key)
            headers["Retry-After"] = headers["RateLimit-Reset"]
            logger.warning(f"Rate limit exceeded for {key} on {request.method} {request.url.path}")
            return JSONResponse(status_code=429, content={"message": RATE_LIMIT_MESSAGE}, headers=headers)

        response = await call_next(request)
        response.headers.update(self._headers(key))
        return response
