"""
Sanskriti Setu API — Application Entry Point
==============================================

What:  Creates the ASGI application served by uvicorn.
Why:   Keeps process concerns (logging setup, reading the environment,
       resolving feature routers) out of the pipeline assembler.
How:   create_app() loads PipelineConfig from the environment, configures
       logging, resolves the feature route table and calls build_pipeline().
Who:   uvicorn sanskriti_api.main:app, or the `sanskriti-api` console script.

Lifecycle (see pipeline.lifespan):
    Startup:
    1. Create the uploads directory
    2. Start the dependency connection in the background (not awaited)
    3. Log startup complete

    Shutdown:
    1. Cancel a pending connection attempt, close the client
    2. Log shutdown complete
"""

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI

from sanskriti_api.config import PipelineConfig
from sanskriti_api.pipeline import build_pipeline
from sanskriti_api.routes import RouteTable, load_route_table

logger = logging.getLogger(__name__)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure process-wide logging.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Access lines go through the "sanskriti.access" logger with the same
    handler; uvicorn's own access log is muted to avoid duplicates.
    """
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)


def create_app(
    config: Optional[PipelineConfig] = None,
    routes: Optional[RouteTable] = None,
) -> FastAPI:
    """
    Build the configured application.

    Args:
        config: pipeline configuration; read from the environment when omitted
        routes: feature route table; resolved from config.feature_routers
                when omitted
    """
    if config is None:
        config = PipelineConfig()
    setup_logging(config.log_level)

    if routes is None:
        routes = load_route_table(config.feature_routers)

    pipeline = build_pipeline(config, routes)
    logger.info("Mounted feature routes: %s", ", ".join(routes.prefixes()) or "none")
    return pipeline.app


app = create_app()


def run() -> None:
    """Console-script entry: serve `app` with uvicorn on HOST:PORT."""
    config: PipelineConfig = app.state.config
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    run()
