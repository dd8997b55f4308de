"""
Structured logging for the collector and the gateway.

Why structlog?
  - Flush and reconcile events carry key/value context (path, step,
    number of values) that stays machine-parseable in JSON mode.
  - Human-readable console output for local dev.
  - contextvars binding: the collector binds its store path and step once
    at start, and every event from the flush task inherits them.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

# Third-party loggers that drown out flush events at INFO.
_NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _service_tag(name: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", name)
        return event_dict
    return processor


def setup_logging(
    *,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
    service: str = "rrd-metrics",
) -> None:
    """
    Call once at process startup. Routes stdlib logging through the
    structlog renderer. Unset arguments come from settings.
    """
    if level is None or json_output is None:
        from configs.settings import get_settings
        cfg = get_settings()
        level = cfg.log_level if level is None else level
        json_output = cfg.log_json if json_output is None else json_output

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _service_tag(service),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_collector_context(store_path: str, step_seconds: int) -> None:
    """Attach the store identity to every event logged from this context on."""
    structlog.contextvars.bind_contextvars(store_path=store_path, step=step_seconds)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a named, bound logger. Use this everywhere."""
    return structlog.get_logger(name)
