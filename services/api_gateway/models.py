"""
Response models for the demo gateway's system endpoints.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PingResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    scheduler_state: str
    store_path: str
    metrics_registered: int


class MetricInfo(BaseModel):
    name: str
    kind: str
    heartbeat: int


class SchedulerStats(BaseModel):
    state: str
    flushes: int
    failures: int
    last_flush_at: Optional[float] = None
    last_error: Optional[str] = None


class StatsResponse(BaseModel):
    """Collector state: registered series, pending values, flush counters."""

    uptime_seconds: float
    store_path: str
    step_seconds: int
    schema_mode: str
    schema_action: Optional[str] = None
    metrics: List[MetricInfo] = Field(default_factory=list)
    pending: Dict[str, float] = Field(default_factory=dict)
    scheduler: Optional[SchedulerStats] = None
