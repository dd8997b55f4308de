"""
Demo gateway — a small FastAPI service with request metrics flushed to RRD.

Architecture decisions:
  1. ONE process, ONE worker. The buffer lives in this process's memory and
     the RRD file is single-writer; two workers would interleave updates.
  2. The collector is created at import time so the middleware can be
     installed before the app starts. Metric registration finishes in the
     lifespan hook, where the full route table is known.
  3. Startup fails if the store cannot be read or created. Serving traffic
     while silently dropping every metric would be worse.
  4. Shutdown waits for the final flush. uvicorn owns SIGINT/SIGTERM and
     drives the lifespan shutdown, so we do not install handlers here.
"""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import ORJSONResponse

from configs.settings import get_settings
from services.api_gateway.middleware import register_route_metrics, setup_request_metrics
from services.api_gateway.models import HealthResponse, PingResponse, StatsResponse
from services.metrics_service import MetricsCollector
from utils.logger import setup_logging, get_logger

_log = get_logger(__name__)

_started_at = time.monotonic()

collector = MetricsCollector()


def _thread_count() -> float:
    return float(threading.active_count())


# ── Lifespan: startup + shutdown ────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: register route metrics and gauges, reconcile the store,
    start the flush loop.
    Shutdown: one final flush.
    """
    setup_logging()
    _log.info("startup_begin")

    register_route_metrics(app, collector)
    collector.add_gauge("threads", _thread_count)

    action = await collector.start()
    _log.info("startup_complete", schema_action=action.value if action else None)

    yield  # ← Application runs here

    _log.info("shutdown_begin")
    await collector.stop()
    _log.info("shutdown_complete")


# ── FastAPI App ─────────────────────────────────────────────

app = FastAPI(
    title="rrd-metrics demo",
    description="Request metrics buffered in-process and flushed to a round-robin store",
    version="1.0.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs",
    redoc_url=None,
)

setup_request_metrics(app, collector)


@app.get("/", response_model=PingResponse)
async def root() -> PingResponse:
    return PingResponse(message="OK")


@app.get("/ping", response_model=PingResponse)
async def ping() -> PingResponse:
    return PingResponse(message="pong")


@app.get("/slow/{millis}", response_model=PingResponse)
async def slow(millis: int) -> PingResponse:
    """Sleep for `millis` ms. Handy for watching _lat and _mlat move."""
    if millis < 0 or millis > 10_000:
        raise HTTPException(status_code=400, detail="millis must be between 0 and 10000")
    await asyncio.sleep(millis / 1000)
    return PingResponse(message=f"slept {millis}ms")


@app.get("/fail")
async def fail():
    raise HTTPException(status_code=503, detail="deliberate failure")


# ── Health + Stats ──────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness + readiness: the flush loop must be alive."""
    stats = collector.snapshot()["scheduler"] or {}
    state = stats.get("state", "idle")
    status = "healthy" if state in ("aligning", "ticking") else "degraded"
    return HealthResponse(
        status=status,
        scheduler_state=state,
        store_path=collector.store_path,
        metrics_registered=len(collector.descriptors),
    )


@app.get("/stats", response_model=StatsResponse)
async def stats() -> StatsResponse:
    """Registered metrics, values waiting for the next flush, flush counters."""
    snap = collector.snapshot()
    return StatsResponse(
        uptime_seconds=round(time.monotonic() - _started_at, 1),
        **snap,
    )


# ── Entry point for `uvicorn` ──────────────────────────────

def start_server() -> None:
    """Start the server programmatically (for scripts/CLI)."""
    import uvicorn
    cfg = get_settings()
    uvicorn.run(
        "services.api_gateway.app:app",
        host=cfg.api_host,
        port=cfg.api_port,
        workers=1,  # single writer, see architecture note 1
        log_level="info",
        access_log=False,  # Requests are already counted
    )


if __name__ == "__main__":
    start_server()
