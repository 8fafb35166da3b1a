"""
Sanskriti Setu API — Pipeline Assembler
=========================================

What:  Builds the single ordered request pipeline every request traverses.
Why:   Stage ordering is a design invariant, so it is declared once as data
       (PIPELINE_ORDER), validated at startup, and readable by tests,
       instead of being implied by the order of add_middleware() calls.
How:   build_pipeline() declares the stage descriptors, validates them, then
       installs each stage into a FastAPI app in declared order.

Pipeline (request flows top to bottom):
    ┌──────────────────────────────────────────────────────────────┐
    │  1  security_headers   helmet default header set             │
    │  2  compression        GZip above a size threshold           │
    │  3  access_log         combined log line + request ID        │
    │  4  rate_limit         fixed window per client identity      │
    │  5  cors               single allowed origin                 │
    │  6  body_decoder       JSON / form, size ceiling             │
    │  7  static_assets      /uploads                              │
    │  8  route_dispatch     /api/health + feature routers         │
    │  9  spa_fallback       production only: bundle + index.html  │
    │ 10  error_responder    any unhandled exception → 500         │
    │ 11  not_found          404 "Route not found"                 │
    └──────────────────────────────────────────────────────────────┘

Mapping onto Starlette:
    1-6   user middleware, outermost first
    7-8   router entries (static mount before feature routers)
    9,11  the router's default app: only reached when nothing matched
    10    exception handler on Exception, run by the outermost
          ServerErrorMiddleware, so it intercepts failures from every stage
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncGenerator, List, Optional, Sequence, Tuple

from fastapi import APIRouter, FastAPI
from starlette.middleware.gzip import GZipMiddleware
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from sanskriti_api import __version__
from sanskriti_api.config import PipelineConfig
from sanskriti_api.database import DependencyHealthTracker
from sanskriti_api.exceptions import PipelineOrderError, RouteTableError
from sanskriti_api.handlers import RouteNotFoundResponder, register_exception_handlers
from sanskriti_api.middleware.body import BodyDecoderMiddleware
from sanskriti_api.middleware.cors import CorsGateMiddleware, CorsPolicy
from sanskriti_api.middleware.logging import AccessLogMiddleware
from sanskriti_api.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from sanskriti_api.middleware.security_headers import SecurityHeadersMiddleware
from sanskriti_api.routes import (
    CORE_PREFIXES,
    HEALTH_PREFIX,
    UPLOADS_PREFIX,
    RouteEntry,
    RouteTable,
)
from sanskriti_api.routes import health
from sanskriti_api.static import FallthroughStaticFiles, SpaFallback

logger = logging.getLogger(__name__)


class StageName(str, Enum):
    SECURITY_HEADERS = "security_headers"
    COMPRESSION = "compression"
    ACCESS_LOG = "access_log"
    RATE_LIMIT = "rate_limit"
    CORS = "cors"
    BODY_DECODER = "body_decoder"
    STATIC_ASSETS = "static_assets"
    ROUTE_DISPATCH = "route_dispatch"
    SPA_FALLBACK = "spa_fallback"
    ERROR_RESPONDER = "error_responder"
    NOT_FOUND = "not_found"


class StageKind(str, Enum):
    MIDDLEWARE = "middleware"
    ROUTING = "routing"
    TERMINAL = "terminal"


PIPELINE_ORDER: Tuple[StageName, ...] = tuple(StageName)


@dataclass(frozen=True)
class Stage:
    name: StageName
    kind: StageKind
    active: bool = True


def declare_stages(config: PipelineConfig) -> Tuple[Stage, ...]:
    """The stage descriptors for `config`, in pipeline order."""
    middleware = StageKind.MIDDLEWARE
    return (
        Stage(StageName.SECURITY_HEADERS, middleware),
        Stage(StageName.COMPRESSION, middleware),
        Stage(StageName.ACCESS_LOG, middleware),
        Stage(StageName.RATE_LIMIT, middleware),
        Stage(StageName.CORS, middleware),
        Stage(StageName.BODY_DECODER, middleware),
        Stage(StageName.STATIC_ASSETS, StageKind.ROUTING),
        Stage(StageName.ROUTE_DISPATCH, StageKind.ROUTING),
        Stage(StageName.SPA_FALLBACK, StageKind.TERMINAL, active=config.is_production),
        Stage(StageName.ERROR_RESPONDER, StageKind.TERMINAL),
        Stage(StageName.NOT_FOUND, StageKind.TERMINAL),
    )


def validate_stage_order(stages: Sequence[Stage]) -> None:
    """
    Raises:
        PipelineOrderError: unless `stages` names exactly PIPELINE_ORDER.
    """
    names = tuple(stage.name for stage in stages)
    if names != PIPELINE_ORDER:
        raise PipelineOrderError(
            "Pipeline stages out of order: got "
            f"{[n.value for n in names]}, expected {[n.value for n in PIPELINE_ORDER]}"
        )


@dataclass(frozen=True)
class Pipeline:
    """The assembled pipeline. `app` is the ASGI entry point."""

    app: FastAPI
    stages: Tuple[Stage, ...]
    config: PipelineConfig
    routes: RouteTable
    tracker: DependencyHealthTracker
    limiter: RateLimiter

    def active_stages(self) -> Tuple[StageName, ...]:
        return tuple(stage.name for stage in self.stages if stage.active)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: ensure the uploads directory, start the dependency connection.
    Shutdown: cancel/close the dependency client.

    The connection task is not awaited: startup completes immediately and
    early requests see the dependency as "connecting".
    """
    config: PipelineConfig = app.state.config
    tracker: DependencyHealthTracker = app.state.tracker

    Path(config.uploads_dir).mkdir(parents=True, exist_ok=True)
    tracker.start()
    logger.info(
        "Sanskriti Setu API started (environment=%s, stages=%s)",
        config.environment.value,
        ",".join(stage.value for stage in app.state.pipeline_stages),
    )

    yield

    logger.info("Sanskriti Setu API shutting down...")
    await tracker.stop()
    logger.info("Shutdown complete.")


class _RouterDefault:
    """Late-bound handle on the router's default app (the terminal chain)."""

    def __init__(self, app: FastAPI) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._app.router.default(scope, receive, send)


class _Assembler:
    """Installs each stage into the app; one _install_* method per StageName."""

    def __init__(
        self,
        app: FastAPI,
        config: PipelineConfig,
        routes: RouteTable,
        limiter: RateLimiter,
    ) -> None:
        self.app = app
        self.config = config
        self.routes = routes
        self.limiter = limiter
        self.middleware: List[Tuple[type, dict]] = []
        self.spa_enabled = False

    def install(self, stages: Sequence[Stage]) -> None:
        for stage in stages:
            if stage.active:
                getattr(self, f"_install_{stage.name.value}")()
        # add_middleware() prepends, so add in reverse to keep declared order
        for cls, options in reversed(self.middleware):
            self.app.add_middleware(cls, **options)

    # ── 1-6: middleware ───────────────────────────────────────────────────

    def _install_security_headers(self) -> None:
        self.middleware.append((SecurityHeadersMiddleware, {}))

    def _install_compression(self) -> None:
        self.middleware.append(
            (GZipMiddleware, {"minimum_size": self.config.compression_min_size})
        )

    def _install_access_log(self) -> None:
        self.middleware.append((AccessLogMiddleware, {}))

    def _install_rate_limit(self) -> None:
        self.middleware.append(
            (
                RateLimitMiddleware,
                {
                    "limiter": self.limiter,
                    "message": self.config.rate_limit_message,
                    "trust_proxy": self.config.trust_proxy,
                },
            )
        )

    def _install_cors(self) -> None:
        policy = CorsPolicy(self.config.cors_origin, credentials=self.config.cors_credentials)
        self.middleware.append((CorsGateMiddleware, {"policy": policy}))

    def _install_body_decoder(self) -> None:
        self.middleware.append(
            (BodyDecoderMiddleware, {"max_bytes": self.config.body_limit_bytes})
        )

    # ── 7-8: routing ──────────────────────────────────────────────────────

    def _install_static_assets(self) -> None:
        # The bare prefix would otherwise be redirected to "/uploads/".
        self.app.router.routes.append(
            Route(UPLOADS_PREFIX, _RouterDefault(self.app), include_in_schema=False)
        )
        self.app.mount(
            UPLOADS_PREFIX,
            FallthroughStaticFiles(
                directory=self.config.uploads_dir,
                fallthrough=_RouterDefault(self.app),
            ),
            name="uploads",
        )

    def _install_route_dispatch(self) -> None:
        clashes = [prefix for prefix in self.routes.prefixes() if prefix in CORE_PREFIXES]
        if clashes:
            raise RouteTableError(f"Feature routes may not claim core prefixes {clashes}")

        table = RouteTable((RouteEntry(HEALTH_PREFIX, health.router),) + self.routes.entries)
        for entry in table.dispatch_order():
            if isinstance(entry.handler, APIRouter):
                self.app.include_router(entry.handler, prefix=entry.prefix)
            else:
                self.app.mount(entry.prefix, entry.handler)
            logger.debug("Mounted %s", entry.prefix)

    # ── 9-11: terminal ────────────────────────────────────────────────────

    def _install_spa_fallback(self) -> None:
        self.spa_enabled = True

    def _install_error_responder(self) -> None:
        register_exception_handlers(self.app, self.config)

    def _install_not_found(self) -> None:
        terminal = RouteNotFoundResponder()
        if self.spa_enabled:
            terminal = SpaFallback(
                directory=self.config.client_build_dir,
                fallthrough=terminal,
                index=self.config.spa_index,
            )
        self.app.router.default = terminal


def build_pipeline(
    config: PipelineConfig,
    routes: RouteTable,
    *,
    tracker: Optional[DependencyHealthTracker] = None,
    limiter: Optional[RateLimiter] = None,
) -> Pipeline:
    """
    Assemble the request pipeline for `config` and the feature `routes`.

    Args:
        config:  frozen pipeline configuration
        routes:  feature route mounts (core prefixes are added here)
        tracker: dependency tracker; built from config when omitted
        limiter: rate limiter; built from config when omitted

    Raises:
        PipelineOrderError: declared stages violate PIPELINE_ORDER
        RouteTableError:    a feature route claims a core prefix
    """
    stages = declare_stages(config)
    validate_stage_order(stages)

    tracker = tracker or DependencyHealthTracker.from_config(config)
    limiter = limiter or RateLimiter(
        window_ms=config.rate_limit_window_ms,
        max_requests=config.rate_limit_max,
    )

    app = FastAPI(
        title="Sanskriti Setu API",
        description="Entry-point request pipeline for the Sanskriti Setu backend.",
        version=__version__,
        lifespan=lifespan,
        # Only RouteTable prefixes are served: no /docs, /redoc or /openapi.json.
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.tracker = tracker
    app.state.pipeline_stages = tuple(stage.name for stage in stages if stage.active)

    _Assembler(app, config, routes, limiter).install(stages)

    return Pipeline(
        app=app,
        stages=stages,
        config=config,
        routes=routes,
        tracker=tracker,
        limiter=limiter,
    )
