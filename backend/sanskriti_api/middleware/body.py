"""
Sanskriti Setu API — Body Decoder Middleware
==============================================

What:  Reads and decodes JSON and form-encoded request bodies (stage 6).
Why:   Enforces one size ceiling for structured payloads before any route
       runs, and hands routes an already-decoded body.
How:   Pure ASGI middleware. For application/json and
       application/x-www-form-urlencoded requests it buffers the body up to
       the limit, decodes it into scope["state"]["body"] (request.state.body),
       then replays the buffered bytes to downstream handlers. Any other
       content type (multipart uploads, binary) streams through untouched.

Failures are answered directly, never raised past this stage:
    Content-Length or streamed size above the limit → 413
    Invalid JSON / JSON scalar / non-UTF-8 text     → 400
"""

import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qsl

from starlette.datastructures import Headers, ImmutableMultiDict
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from sanskriti_api.exceptions import (
    MalformedBodyError,
    PayloadTooLargeError,
    SanskritiError,
)

logger = logging.getLogger(__name__)

JSON_TYPE = "application/json"
FORM_TYPE = "application/x-www-form-urlencoded"


def _media_type(headers: Headers) -> Optional[str]:
    content_type = headers.get("content-type")
    if not content_type:
        return None
    media = content_type.split(";", 1)[0].strip().lower()
    # application/vnd.api+json and friends decode as JSON too
    if media == JSON_TYPE or media.endswith("+json"):
        return JSON_TYPE
    if media == FORM_TYPE:
        return FORM_TYPE
    return None


def decode_json(raw: bytes) -> Any:
    """Strict JSON: only objects and arrays are accepted at the top level."""
    if not raw.strip():
        return {}
    try:
        value = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedBodyError(
            "Request body is not valid JSON", context={"reason": str(e)}
        ) from e
    if not isinstance(value, (dict, list)):
        raise MalformedBodyError("JSON body must be an object or an array")
    return value


def decode_form(raw: bytes) -> ImmutableMultiDict:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedBodyError("Form body is not valid UTF-8") from e
    return ImmutableMultiDict(parse_qsl(text, keep_blank_values=True))


class BodyDecoderMiddleware:
    def __init__(self, app: ASGIApp, max_bytes: int = 10_485_760) -> None:
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        media_type = _media_type(headers)
        if media_type is None:
            await self.app(scope, receive, send)
            return

        try:
            raw = await self._read_body(headers, receive)
            decoded = decode_json(raw) if media_type == JSON_TYPE else decode_form(raw)
        except SanskritiError as exc:
            logger.info("Rejected %s body: %s", media_type, exc.message)
            response = JSONResponse(status_code=exc.status_code, content=exc.to_content())
            await response(scope, receive, send)
            return

        scope.setdefault("state", {})["body"] = decoded
        await self.app(scope, _replay(raw, receive), send)

    async def _read_body(self, headers: Headers, receive: Receive) -> bytes:
        declared = headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_bytes:
            raise PayloadTooLargeError(self.max_bytes)

        chunks = []
        size = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            size += len(chunk)
            if size > self.max_bytes:
                raise PayloadTooLargeError(self.max_bytes)
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        return b"".join(chunks)


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay_receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive
