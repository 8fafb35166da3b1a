"""
Sanskriti Setu API — Static Asset Serving
===========================================

What:  Serves files that already exist on disk: /uploads always, and in
       production the built frontend bundle with an index.html fallback.
Why:   A miss must not end the request. Like the rest of the pipeline, it
       falls through to the next terminal handler (SPA fallback or 404).
How:   Thin StaticFiles subclasses that catch the 404/405 StaticFiles would
       raise and hand the request to a `fallthrough` ASGI app instead.

Neither class creates or validates its directory up front: a missing
directory behaves like an empty one.
"""

import logging
import os
from pathlib import Path
from typing import Sequence, Union

from starlette.exceptions import HTTPException
from starlette.responses import FileResponse
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]

_FALLTHROUGH_STATUSES = {404, 405}


class FallthroughStaticFiles(StaticFiles):
    """StaticFiles that delegates misses to `fallthrough` rather than answering them."""

    def __init__(self, *, directory: PathLike, fallthrough: ASGIApp) -> None:
        super().__init__(directory=directory, check_dir=False)
        self.fallthrough = fallthrough

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.fallthrough(scope, receive, send)
            return
        try:
            response = await self.get_response(self.get_path(scope), scope)
        except HTTPException as exc:
            if exc.status_code not in _FALLTHROUGH_STATUSES:
                raise
            await self.fallthrough(scope, receive, send)
            return
        await response(scope, receive, send)


class SpaFallback(FallthroughStaticFiles):
    """
    Production catch-all for a client-side-routed frontend.

    GET/HEAD requests outside the reserved API prefixes get the matching
    bundle file if one exists, else the index document. Everything else,
    and any request when the index itself is missing, falls through.
    """

    def __init__(
        self,
        *,
        directory: PathLike,
        fallthrough: ASGIApp,
        index: str = "index.html",
        reserved_prefixes: Sequence[str] = ("/api",),
    ) -> None:
        super().__init__(directory=directory, fallthrough=fallthrough)
        self.index_path = Path(directory) / index
        self.reserved_prefixes = tuple(reserved_prefixes)

    def _is_reserved(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix + "/")
            for prefix in self.reserved_prefixes
        )

    def get_path(self, scope: Scope) -> str:
        # Always resolve against the full request path, even when reached
        # from inside another mount.
        return os.path.normpath(os.path.join(*scope["path"].split("/")))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope["method"] not in ("GET", "HEAD")
            or self._is_reserved(scope["path"])
        ):
            await self.fallthrough(scope, receive, send)
            return

        try:
            response = await self.get_response(self.get_path(scope), scope)
        except HTTPException as exc:
            if exc.status_code not in _FALLTHROUGH_STATUSES:
                raise
            if not self.index_path.is_file():
                logger.warning("SPA index missing at %s", self.index_path)
                await self.fallthrough(scope, receive, send)
                return
            response = FileResponse(self.index_path, media_type="text/html")
        await response(scope, receive, send)
