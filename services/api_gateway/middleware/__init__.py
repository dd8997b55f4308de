"""
Request instrumentation middleware.

Architecture decisions:
  1. Two naming modes. Static: every request through the middleware counts
     against one fixed base name. Dynamic: a namer maps each request to its
     matched route pattern (never the raw path), and the pattern becomes the
     base name via route_metric().
  2. Dynamic metric sets are registered once at startup from the route
     table, plus an `unknown` set. A request whose pattern was not
     registered (404s, scanners) lands in `unknown`, so the number
     of series cannot grow with traffic.
     Routes inside a Mount are named with the mount prefix, matching what
     fastapi_route_patterns() registers.
  3. Latency is measured until the response starts (call_next returns when
     the headers are ready). Streaming bodies are not included.
  4. A handler that raises is recorded as a 500 and the exception continues
     up the stack untouched.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.routing import Mount, Route

from configs.settings import get_settings
from services.metrics_service.collector import MetricsCollector
from services.metrics_service.descriptors import UNKNOWN_ROUTE, route_metric
from utils.logger import get_logger
from utils.timing import timed

_log = get_logger(__name__)

RouteNamer = Callable[[Request], Optional[str]]

# root_path as the request entered the middleware, before any Mount extended it
_ENTRY_ROOT_PATH = "metrics.entry_root_path"


def route_pattern(request: Request) -> Optional[str]:
    """
    The matched route's path template, e.g. /items/{item_id}. Routes inside
    a Mount carry the mount prefix (/sub/status), the same form
    fastapi_route_patterns() registers.
    """
    scope = request.scope
    path = getattr(scope.get("route"), "path", None)
    if path is None:
        return None
    root_path = scope.get("root_path", "")
    entry = scope.get(_ENTRY_ROOT_PATH, "")
    prefix = root_path[len(entry):] if root_path.startswith(entry) else ""
    return prefix + path


class HTTPMetricsMiddleware(BaseHTTPMiddleware):
    """
    Count, 4xx, 5xx, average and max latency per base name.
    Pass exactly one of `metric_name` (static) or `namer` (dynamic).
    """

    def __init__(
        self,
        app,
        collector: MetricsCollector,
        metric_name: Optional[str] = None,
        namer: Optional[RouteNamer] = None,
    ) -> None:
        super().__init__(app)
        if (metric_name is None) == (namer is None):
            raise ValueError("pass exactly one of metric_name or namer")
        self._collector = collector
        self._namer = namer
        self._static_base: Optional[str] = None
        if metric_name is not None:
            self._static_base = collector.add_http_metric(metric_name).base

    def _base_for(self, request: Request) -> str:
        if self._static_base is not None:
            return self._static_base
        pattern = self._namer(request)
        if not pattern:
            return UNKNOWN_ROUTE
        base = route_metric(pattern)
        if self._collector.http_metric_set(base) is None:
            return UNKNOWN_ROUTE
        return base

    async def dispatch(self, request: Request, call_next: Callable):
        request.scope.setdefault(_ENTRY_ROOT_PATH, request.scope.get("root_path", ""))
        status_code = 500
        try:
            with timed() as t:
                response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            self._collector.observe_request(self._base_for(request), t["ms"], status_code)


def fastapi_route_patterns(app: FastAPI) -> List[str]:
    """Every HTTP route template in the app, mounts included."""
    patterns: List[str] = []

    def walk(routes, prefix: str) -> None:
        for route in routes:
            if isinstance(route, Mount):
                walk(route.routes, prefix + route.path)
            elif isinstance(route, Route):
                patterns.append(prefix + route.path)

    walk(app.routes, "")
    return patterns


def setup_request_metrics(app: FastAPI, collector: MetricsCollector) -> None:
    """
    Install the middleware. Must run before the app starts serving;
    call register_route_metrics() from the lifespan hook afterwards.
    """
    cfg = get_settings()

    if cfg.metrics_route_metrics:
        app.add_middleware(HTTPMetricsMiddleware, collector=collector, namer=route_pattern)
        _log.info("request_metrics_enabled", mode="route")
    else:
        app.add_middleware(HTTPMetricsMiddleware, collector=collector, metric_name="http")
        _log.info("request_metrics_enabled", mode="static", metric="http")


def register_route_metrics(app: FastAPI, collector: MetricsCollector) -> None:
    """Register one metric set per route. No-op in static mode."""
    cfg = get_settings()
    if cfg.metrics_route_metrics:
        collector.add_route_metrics(fastapi_route_patterns(app))
