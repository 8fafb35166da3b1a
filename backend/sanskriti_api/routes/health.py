"""
Sanskriti Setu API — Health Check Route
=========================================

What:  GET (and HEAD) /api/health for load balancers and uptime monitors.
How:   Reads the dependency tracker's last recorded state; no I/O.

Health Check Philosophy:
    This endpoint answers "is the API process alive?". It returns 200
    whenever the process can respond, even with the document store down.
    Dependency liveness is reported in the body under `dependency` so
    monitors can alert on it without the load balancer pulling a process
    that can still serve static assets and the SPA.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from sanskriti_api.schemas.health import DependencyHealth, HealthResponse

router = APIRouter(tags=["Health"])


@router.api_route(
    "",
    methods=["GET", "HEAD"],
    response_model=HealthResponse,
    summary="Service health check",
    description="Process liveness with the document store's connection state.",
)
async def health_check(request: Request) -> HealthResponse:
    config = request.app.state.config
    dependency = request.app.state.tracker.current_state()

    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        environment=config.environment.value,
        dependency=DependencyHealth(
            connected=dependency.connected,
            status=dependency.status,
        ),
    )
