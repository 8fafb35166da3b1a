"""
Sanskriti Setu API — Rate Limiting Middleware
===============================================

What:  Per-client fixed-window rate limiter (stage 4 of the pipeline).
Why:   Bounds request volume per client before CORS, body parsing or any
       route work is spent on it.
How:   Each identity owns (window_start, count). When the window has
       elapsed the pair resets; every request increments the count; a count
       above the maximum is rejected with 429.

Algorithm: Fixed Window Counter
    now - window_start >= W  →  window_start = now, count = 0
    count += 1
    count > N                →  reject (Retry-After = seconds to window end)

Identity policy:
    - Default: the socket peer address.
    - trust_proxy=True: the left-most X-Forwarded-For entry.
    - No usable address: every such request shares the FALLBACK_IDENTITY
      bucket. Shared-NAT style clients are limited together rather than
      starved individually or left unlimited.

Concurrency:
    admit() holds a lock across read-check-increment so concurrent
    requests from one identity can never be admitted beyond N.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from sanskriti_api.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)

FALLBACK_IDENTITY = "unidentified"

# Sweep expired windows once per this many admissions.
_CLEANUP_EVERY = 1000


@dataclass(frozen=True)
class Admission:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: float
    retry_after: Optional[int] = None


class RateLimiter:
    """
    In-memory fixed-window counter keyed by client identity.

    Single-process only: counters are not shared between workers and are
    lost on restart.
    """

    def __init__(
        self,
        window_ms: int = 900_000,
        max_requests: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_ms <= 0 or max_requests <= 0:
            raise ValueError("window_ms and max_requests must be positive")
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock
        self._lock = threading.Lock()
        # identity → [window_start_ms, count]
        self._windows: Dict[str, List[float]] = {}
        self._admissions = 0

    def now_ms(self) -> float:
        return self._clock() * 1000

    def admit(self, identity: str, now: Optional[float] = None) -> Admission:
        """Count one request for `identity` at `now` (ms) and decide."""
        if now is None:
            now = self.now_ms()

        with self._lock:
            window = self._windows.get(identity)
            if window is None or now - window[0] >= self.window_ms:
                window = [now, 0]
                self._windows[identity] = window
            window[1] += 1
            window_start, count = window

            self._admissions += 1
            if self._admissions % _CLEANUP_EVERY == 0:
                self._purge_expired(now)

        reset_at = window_start + self.window_ms
        if count > self.max_requests:
            return Admission(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at_ms=reset_at,
                retry_after=max(1, math.ceil((reset_at - now) / 1000)),
            )
        return Admission(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - int(count),
            reset_at_ms=reset_at,
        )

    def reset(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(identity, None)

    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._windows)

    def _purge_expired(self, now: float) -> None:
        # Caller holds the lock.
        expired = [
            identity
            for identity, (start, _count) in self._windows.items()
            if now - start >= self.window_ms
        ]
        for identity in expired:
            del self._windows[identity]
        if expired:
            logger.debug("Purged %d expired rate-limit windows", len(expired))


def client_identity(request: Request, trust_proxy: bool = False) -> str:
    """Bucket key for `request`; see the module docstring for the policy."""
    if trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    host = request.client.host if request.client else None
    return host or FALLBACK_IDENTITY


def _limit_headers(admission: Admission) -> Dict[str, str]:
    return {
        "X-RateLimit-Limit": str(admission.limit),
        "X-RateLimit-Remaining": str(admission.remaining),
        "X-RateLimit-Reset": str(math.ceil(admission.reset_at_ms / 1000)),
    }


class RateLimitMiddleware:
    """
    Applies a RateLimiter to every request, health checks included.

    Response on rate limit:
        HTTP 429 with the configured message, Retry-After, and the
        X-RateLimit-* headers also sent on admitted responses.
    """

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter,
        message: str,
        trust_proxy: bool = False,
    ) -> None:
        self.app = app
        self.limiter = limiter
        self.message = message
        self.trust_proxy = trust_proxy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        identity = client_identity(Request(scope), self.trust_proxy)
        admission = self.limiter.admit(identity)
        headers = _limit_headers(admission)

        if not admission.allowed:
            logger.warning(
                "Rate limit exceeded for %s: more than %d requests in %dms window",
                identity,
                self.limiter.max_requests,
                self.limiter.window_ms,
            )
            exc = RateLimitExceededError(self.message, retry_after=admission.retry_after)
            headers["Retry-After"] = str(exc.retry_after)
            response = JSONResponse(
                status_code=exc.status_code,
                content=exc.to_content(),
                headers=headers,
            )
            await response(scope, receive, send)
            return

        async def send_with_limits(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for name, value in headers.items():
                    response_headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_limits)
