"""
Sanskriti Setu API — Exception Hierarchy
=========================================

What:  Application-specific exceptions for the request pipeline.
Why:   Each client-facing failure carries its own HTTP status, error code and
       safe message, so stages and handlers render them consistently.
How:   Exceptions store a message plus an optional context dict. Pipeline
       stages that answer on their own (rate limiter, body decoder) render
       them directly; ones raised from route handlers reach the handlers
       registered in handlers.py.

Exception Hierarchy:
    SanskritiError (base)              → 500
    ├── RateLimitExceededError         → 429 Too Many Requests
    ├── PayloadTooLargeError           → 413 Payload Too Large
    └── MalformedBodyError             → 400 Bad Request

    Startup-time (never rendered as HTTP):
    ├── PipelineOrderError             stage descriptors out of order
    ├── RouteTableError                bad or colliding mount prefix
    └── InvalidTransitionError         illegal ConnectionState change
"""

from typing import Any, Dict, Optional


class SanskritiError(Exception):
    """
    Base exception for all pipeline errors that map to an HTTP response.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional details returned under "details"
    """

    status_code: int = 500
    error: str = "server_error"

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_content(self) -> Dict[str, Any]:
        content: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.context:
            content["details"] = self.context
        return content


class RateLimitExceededError(SanskritiError):
    """
    Raised when a client identity exceeds its fixed-window budget.

    The message is fixed by configuration; retry_after is the number of
    seconds until the identity's window resets.
    """

    status_code = 429
    error = "rate_limit_exceeded"

    def __init__(
        self,
        message: str,
        retry_after: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class PayloadTooLargeError(SanskritiError):
    """Request body is larger than the configured ceiling."""

    status_code = 413
    error = "payload_too_large"

    def __init__(self, limit: int, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["limit"] = limit
        super().__init__(message="Request entity too large", context=ctx)
        self.limit = limit


class MalformedBodyError(SanskritiError):
    """
    Body could not be decoded for its declared content type.

    When:  Invalid JSON, a JSON scalar where an object/array is required,
           or bytes that are not valid UTF-8.
    """

    status_code = 400
    error = "malformed_body"

    def __init__(self, message: str = "Request body could not be parsed", context=None):
        super().__init__(message=message, context=context)


class PipelineOrderError(Exception):
    """Stage descriptors do not follow the fixed pipeline order."""


class RouteTableError(ValueError):
    """A route mount prefix is malformed, duplicated, or reserved by the core."""


class InvalidTransitionError(Exception):
    """A ConnectionState change not permitted by the state machine."""

    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move dependency state from '{current.value}' to '{requested.value}'"
        )
