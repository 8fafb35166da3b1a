"""
Sanskriti Setu API — CORS Gate
===============================

What:  Single-origin, credentialed CORS policy (stage 5).
Why:   Only the frontend origin may read API responses from a browser.
How:   CorsPolicy.authorize() inspects the Origin header and decides which
       response headers to set. It never rejects a request: a mismatched
       origin just gets no permissive headers and the browser enforces the
       rest. Non-browser clients (no Origin) pass through untouched.

Preflight:
    OPTIONS + Access-Control-Request-Method is answered here with 204 so it
    never reaches body decoding or route dispatch.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

DEFAULT_METHODS = ("GET", "HEAD", "PUT", "PATCH", "POST", "DELETE")


@dataclass(frozen=True)
class CorsDecision:
    allow: bool
    headers: Dict[str, str] = field(default_factory=dict)


class CorsPolicy:
    """
    Exactly one allowed origin.

    With credentials enabled the specific origin is echoed back; a
    wildcard origin is refused at construction.
    """

    def __init__(
        self,
        origin: str,
        credentials: bool = True,
        methods: Sequence[str] = DEFAULT_METHODS,
    ) -> None:
        origin = origin.strip().rstrip("/")
        if credentials and origin == "*":
            raise ValueError("A credentialed CORS policy cannot use the '*' origin")
        self.origin = origin
        self.credentials = credentials
        self.methods = tuple(m.upper() for m in methods)

    def authorize(self, origin_header: Optional[str]) -> CorsDecision:
        if not origin_header:
            return CorsDecision(allow=False)
        if self.origin != "*" and origin_header.rstrip("/") != self.origin:
            return CorsDecision(allow=False)

        headers = {
            "Access-Control-Allow-Origin": "*" if self.origin == "*" else origin_header,
        }
        if self.credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return CorsDecision(allow=True, headers=headers)

    def preflight(
        self, origin_header: Optional[str], requested_headers: Optional[str] = None
    ) -> CorsDecision:
        decision = self.authorize(origin_header)
        if not decision.allow:
            return decision
        headers = dict(decision.headers)
        headers["Access-Control-Allow-Methods"] = ",".join(self.methods)
        if requested_headers:
            headers["Access-Control-Allow-Headers"] = requested_headers
        return CorsDecision(allow=True, headers=headers)


def _is_preflight(scope: Scope, headers: Headers) -> bool:
    return scope["method"] == "OPTIONS" and "access-control-request-method" in headers


def _apply(headers: MutableHeaders, decision: CorsDecision) -> None:
    headers.add_vary_header("Origin")
    for name, value in decision.headers.items():
        headers[name] = value


class CorsGateMiddleware:
    def __init__(self, app: ASGIApp, policy: CorsPolicy) -> None:
        self.app = app
        self.policy = policy

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        origin = headers.get("origin")

        if _is_preflight(scope, headers):
            decision = self.policy.preflight(
                origin, headers.get("access-control-request-headers")
            )
            response = Response(status_code=204)
            _apply(response.headers, decision)
            await response(scope, receive, send)
            return

        decision = self.policy.authorize(origin)

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                _apply(MutableHeaders(scope=message), decision)
            await send(message)

        await self.app(scope, receive, send_with_cors)
