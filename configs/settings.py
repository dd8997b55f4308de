"""
Centralized configuration — loaded once at process startup.

Why a single settings module?
  - The collector, the middleware and the demo gateway read the same env vars.
  - Pydantic validates types at import time so we fail fast on bad config
    (a step of 0 or an unknown schema mode never reaches the scheduler).
  - No scattered os.getenv() calls across the codebase.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Immutable, validated application settings from environment."""

    # ── Metrics collector ───────────────────────────────────
    metrics_step_seconds: int = Field(default=60, ge=1, description="Store step and flush interval")
    metrics_store_path: str = Field(default="./data/metrics.rrd", description="Round-robin store file")
    metrics_store_backend: Literal["rrdtool", "memory"] = Field(
        default="rrdtool",
        description="rrdtool writes a real RRD file; memory keeps everything in-process",
    )
    metrics_schema_mode: Literal["automigrate", "fixed"] = Field(
        default="automigrate",
        description="automigrate rebuilds the store when metrics change; fixed never touches the schema",
    )

    # ── Per-metric defaults ─────────────────────────────────
    metrics_heartbeat_seconds: int = Field(default=900, ge=1)
    metrics_min_value: int = Field(default=0)
    metrics_max_value: Optional[int] = Field(default=None, description="None means unbounded")

    # ── HTTP instrumentation ────────────────────────────────
    metrics_route_metrics: bool = Field(default=True, description="Name request metrics after matched routes")

    # ── API ─────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)

    # ── Logging ─────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="JSON log lines instead of console output")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Singleton accessor — parsed once and cached for the process lifetime.
    Import this wherever you need config:
        from configs.settings import get_settings
        cfg = get_settings()
    """
    return Settings()
