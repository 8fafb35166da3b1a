"""
Sanskriti Setu API — Error Responders
=======================================

What:  The terminal handlers at the end of the pipeline.
Why:   Every failure, whichever stage raises it, ends as a JSON body with a
       human-readable "message" field.
How:   register_exception_handlers() wires FastAPI exception handlers;
       RouteNotFoundResponder is installed as the router's default app so it
       only ever sees requests nothing else matched.

Handler hierarchy:
    SanskritiError            → its own status (raised by routes)
    HTTPException             → its own status, {"message": detail}
    RequestValidationError    → 422 with field errors
    Exception (fallback)      → 500, detail only in development
    (no route, no static file)→ 404 "Route not found"

Information disclosure:
    The 500 body carries str(exc) under "error" only when
    environment=development. Every other environment gets an empty object;
    the traceback is always logged server-side with the request ID.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketClose

from sanskriti_api.config import PipelineConfig
from sanskriti_api.exceptions import SanskritiError
from sanskriti_api.middleware.logging import request_id_var
from sanskriti_api.schemas.health import ErrorResponse

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "Something went wrong!"
NOT_FOUND_MESSAGE = "Route not found"


class RouteNotFoundResponder:
    """Strictly-last catch-all: 404 for anything no stage claimed."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "websocket":
            await WebSocketClose()(scope, receive, send)
            return
        body = ErrorResponse(message=NOT_FOUND_MESSAGE)
        response = JSONResponse(status_code=404, content=body.model_dump(exclude_none=True))
        await response(scope, receive, send)


def register_exception_handlers(app: FastAPI, config: PipelineConfig) -> None:
    """Install the error responders; `config` decides error-detail redaction."""

    @app.exception_handler(SanskritiError)
    async def handle_application_error(request: Request, exc: SanskritiError):
        rid = request_id_var.get("")
        logger.warning("[%s] %s: %s", rid, exc.error, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_content())

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                message="Request validation failed",
                errors=jsonable_encoder(exc.errors()),
            ).model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """
        Catch-all for failures no earlier stage handled.

        Registered on Exception, so Starlette runs it from the outermost
        ServerErrorMiddleware: it intercepts errors from every stage.
        """
        rid = request_id_var.get("")
        logger.error(
            "[%s] Unhandled error on %s %s: %s",
            rid,
            request.method,
            request.url.path,
            str(exc),
            exc_info=exc,
        )
        detail = str(exc) if config.is_development else {}
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(message=GENERIC_ERROR_MESSAGE, error=detail).model_dump(
                exclude_none=True
            ),
        )
