"""
Sanskriti Setu API — Access Logging Middleware
================================================

What:  One access-log line per request (stage 3), plus a request ID.
Why:   Sits ahead of the rate limiter and CORS gate so rejected requests are
       logged too.
How:   Apache "combined" format, the same shape morgan('combined') writes:

    ::1 - - [19/Oct/2026:10:00:00 +0000] "GET /api/health HTTP/1.1" 200 97 "-" "curl/8.5.0"

Request IDs:
    Taken from the client's X-Request-ID header when present, otherwise a
    short UUID. Stored in a ContextVar so the error handlers can quote it,
    and echoed back in the response headers.

Log level follows the status class: 5xx → ERROR, 4xx → WARNING, else INFO.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

logger = logging.getLogger("sanskriti.access")

# Coroutine-local: concurrent requests on one thread each see their own ID.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_CLF_DATE = "%d/%b/%Y:%H:%M:%S %z"


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


def combined_log_line(request: Request, status: int, content_length: str) -> str:
    """Render one request in Apache combined log format."""
    remote = request.client.host if request.client else "-"
    target = request.url.path
    if request.url.query:
        target = f"{target}?{request.url.query}"
    http_version = request.scope.get("http_version", "1.1")
    return '%s - - [%s] "%s %s HTTP/%s" %d %s "%s" "%s"' % (
        remote,
        datetime.now(timezone.utc).strftime(_CLF_DATE),
        request.method,
        target,
        http_version,
        status,
        content_length or "-",
        request.headers.get("referer", "-"),
        request.headers.get("user-agent", "-"),
    )


class AccessLogMiddleware:
    """
    Logs every request, including ones later stages reject or that raise.

    An exception escaping the inner stages is logged as a 500 and re-raised
    for the generic error responder.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
        request_id_var.set(rid)
        request.state.request_id = rid

        start_time = time.perf_counter()
        status = 500
        length = "-"

        async def send_with_request_id(message: Message) -> None:
            nonlocal status, length
            if message["type"] == "http.response.start":
                status = message["status"]
                length = Headers(raw=message.get("headers", [])).get("content-length", "-")
                MutableHeaders(scope=message)["X-Request-ID"] = rid
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        except Exception:
            self._log(request, 500, "-", start_time, rid)
            raise
        self._log(request, status, length, start_time, rid)

    @staticmethod
    def _log(request: Request, status: int, length: str, start_time: float, rid: str) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.log(
            _level_for(status),
            combined_log_line(request, status, length),
            extra={
                "request_id": rid,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
