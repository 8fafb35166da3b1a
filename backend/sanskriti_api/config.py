"""
Sanskriti Setu API — Pipeline Configuration
============================================

What:  Typed, immutable configuration for the request pipeline.
Why:   Every stage reads its limits and policies from one validated object
       instead of peeking at environment variables inside handlers.
How:   Pydantic Settings reads environment variables (or a .env file),
       validates types/ranges, and freezes the result.
Who:   Built once by main.create_app() and passed into build_pipeline().
When:  Process startup; never mutated afterwards.

Recognized environment variables (case-insensitive):
    MONGODB_URI                           dependency connection target
    NODE_ENV                              development | production | test
    CORS_ORIGIN / CORS_CREDENTIALS        single allowed origin policy
    BODY_LIMIT_BYTES                      JSON + form payload ceiling
    RATE_LIMIT_WINDOW_MS / RATE_LIMIT_MAX fixed-window limiter
    TRUST_PROXY                           use X-Forwarded-For for identity
    UPLOADS_DIR / CLIENT_BUILD_DIR        static mounts
    FEATURE_ROUTERS                       JSON {prefix: "module:attr"}
"""

from enum import Enum
from pathlib import Path
from typing import Dict

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# backend/: uploads/ lives here, the client bundle one level up.
BACKEND_ROOT = Path(__file__).resolve().parent.parent


class Environment(str, Enum):
    """Deployment mode. Controls error-detail redaction and the SPA fallback."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


class PipelineConfig(BaseSettings):
    """
    Process-lifetime configuration for the request pipeline.

    Frozen: assigning to any field after construction raises a
    pydantic ValidationError, so no request can mutate it.
    """

    # ── Environment ───────────────────────────────────────────────────────
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        validation_alias=AliasChoices("NODE_ENV", "environment"),
        description="development shows error details; production enables the SPA fallback",
    )

    # ── Dependency (document store) ───────────────────────────────────────
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/sanskriti-setu",
        description="Connection string for the backing document store",
    )
    # Both bounds must be finite: an unreachable store may not stall startup.
    mongodb_server_selection_timeout_ms: int = Field(default=5000, ge=100, le=120_000)
    mongodb_socket_timeout_ms: int = Field(default=45_000, ge=100, le=600_000)

    # ── CORS ──────────────────────────────────────────────────────────────
    cors_origin: str = Field(default="http://localhost:3000")
    cors_credentials: bool = Field(default=True)

    # ── Body decoding ─────────────────────────────────────────────────────
    # 10MB = 10 * 1024 * 1024, shared by JSON and form-encoded payloads
    body_limit_bytes: int = Field(default=10_485_760, ge=1024)

    # ── Rate limiting ─────────────────────────────────────────────────────
    rate_limit_window_ms: int = Field(default=900_000, ge=1)  # 15 minutes
    rate_limit_max: int = Field(default=100, ge=1)
    rate_limit_message: str = Field(
        default="Too many requests from this IP, please try again later."
    )
    trust_proxy: bool = Field(
        default=False,
        description="Bucket clients by the left-most X-Forwarded-For entry",
    )

    # ── Static assets ─────────────────────────────────────────────────────
    uploads_dir: Path = Field(default=BACKEND_ROOT / "uploads")
    client_build_dir: Path = Field(default=BACKEND_ROOT.parent / "client" / "build")
    spa_index: str = Field(default="index.html")

    # ── Compression ───────────────────────────────────────────────────────
    compression_min_size: int = Field(default=1024, ge=0)

    # ── Feature routes ────────────────────────────────────────────────────
    feature_routers: Dict[str, str] = Field(
        default_factory=dict,
        description='Mount map, e.g. {"/api/auth": "features.auth:router"}',
    )

    # ── Server ────────────────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "frozen": True,
    }

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        """A blank NODE_ENV means development, like an unset one."""
        if v is None:
            return Environment.DEVELOPMENT
        if isinstance(v, str):
            return v.strip().lower() or Environment.DEVELOPMENT
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    @model_validator(mode="after")
    def validate_cors_policy(self) -> "PipelineConfig":
        """Credentialed CORS must name a concrete origin, never '*'."""
        if self.cors_credentials and self.cors_origin.strip() == "*":
            raise ValueError(
                "CORS_ORIGIN='*' cannot be combined with CORS_CREDENTIALS=true; "
                "set the frontend origin explicitly."
            )
        return self

    @property
    def is_development(self) -> bool:
        return self.environment is Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION
