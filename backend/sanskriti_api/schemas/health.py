"""
Sanskriti Setu API — Response Schemas
======================================

What:  Pydantic models for the bodies this core produces itself.
Why:   FastAPI validates and documents them in the OpenAPI schema; feature
       routers define their own.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class DependencyHealth(BaseModel):
    connected: bool = Field(description="True only after a successful connection")
    status: str = Field(description="connecting, connected or disconnected")


class HealthResponse(BaseModel):
    """
    What:  Process liveness plus dependency liveness.
    Who:   Returned by GET /api/health.

    status is always "healthy" while the process can answer; a degraded
    dependency is reported under `dependency`, not through the HTTP status.
    """

    status: str = Field(default="healthy", description="Process liveness")
    timestamp: str = Field(description="Response time, ISO 8601 UTC")
    environment: str = Field(description="development, production or test")
    dependency: DependencyHealth


class ErrorResponse(BaseModel):
    """Shape shared by every failure body."""

    message: str = Field(description="Human-readable explanation")
    error: Optional[Union[str, Dict[str, Any]]] = Field(
        default=None,
        description="Machine-readable code, or the failure detail in development",
    )
    details: Optional[Dict[str, Any]] = None
    errors: Optional[List[Any]] = None
