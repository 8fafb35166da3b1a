# Middleware package init
"""
Sanskriti Setu API — Middleware Package
========================================

What:  The cross-cutting stages every request passes through before routing.
Why:   Shared concerns live here once instead of in each feature router.

Middleware Chain (outermost first, fixed by pipeline.PIPELINE_ORDER):
    Request → [Security Headers] → [GZip] → [Access Log] → [Rate Limit]
            → [CORS Gate] → [Body Decoder] → Router

    Why this order:
    1. Security headers and access logging wrap the limiter so rejected
       requests still get headers and a log line
    2. Rate limiting and CORS run before body parsing so abusive traffic
       costs as little as possible
    3. Body decoding is innermost: only admitted requests pay for it

Every stage is a plain ASGI callable that edits only the response start
message, so GZip below the security headers still sees a whole small
response in one body message and applies its minimum size.
"""

from sanskriti_api.middleware.body import BodyDecoderMiddleware
from sanskriti_api.middleware.cors import CorsGateMiddleware, CorsPolicy
from sanskriti_api.middleware.logging import AccessLogMiddleware, request_id_var
from sanskriti_api.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from sanskriti_api.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "AccessLogMiddleware",
    "BodyDecoderMiddleware",
    "CorsGateMiddleware",
    "CorsPolicy",
    "RateLimitMiddleware",
    "RateLimiter",
    "SecurityHeadersMiddleware",
    "request_id_var",
]
