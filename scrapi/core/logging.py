"""
Logging configuration with Wide Events / Canonical Log Lines pattern.

Each processing cycle builds one comprehensive event (jobs selected, processed,
failed, deferred, duration) and emits it once at the end of the cycle, next to
the regular per-job log lines.

References:
- https://charity.wtf/2019/02/05/logs-vs-structured-events/
- Stripe's "canonical log lines" pattern
"""

import logging
import os
import sys
import time
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import Processor

# Context variables for the cycle-scoped wide event
_cycle_event: ContextVar[dict[str, Any] | None] = ContextVar("cycle_event", default=None)
_cycle_start: ContextVar[float] = ContextVar("cycle_start", default=0.0)


def enrich_event(**kwargs: Any) -> None:
    """
    Add fields to the current cycle's wide event.

        enrich_event(processed=3, **{"queues.submitted": 12})

    Keys with dots are expanded into nested objects.
    """
    event = _cycle_event.get()
    if event is None:
        return
    for key, value in kwargs.items():
        if "." in key:
            parts = key.split(".")
            target = event
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        else:
            event[key] = value


def init_cycle_event(cycle: int) -> dict[str, Any]:
    """Initialize a new wide event for one processing cycle."""
    event = {
        "cycle": cycle,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S.000Z", time.gmtime()),
        "service": {
            "name": "scrapi-processor",
            "version": os.environ.get("APP_VERSION", "dev"),
            "environment": os.environ.get("ENVIRONMENT", "development"),
        },
    }
    _cycle_event.set(event)
    _cycle_start.set(time.monotonic())
    return event


def finalize_cycle_event(error: Exception | None = None) -> dict[str, Any]:
    """Finalize and return the wide event for emission."""
    event = _cycle_event.get() or {}
    event["duration_ms"] = int((time.monotonic() - _cycle_start.get()) * 1000)
    event["outcome"] = "error" if error else "success"

    if error:
        event["error"] = {
            "type": type(error).__name__,
            "message": str(error)[:500],
        }
    return event


def emit_cycle_event(error: Exception | None = None) -> dict[str, Any]:
    """
    Emit the canonical log line for a cycle.

    This is the single, comprehensive record of what the cycle did.
    """
    event = finalize_cycle_event(error)
    _cycle_event.set(None)
    logger = structlog.get_logger("wide_event")

    if error:
        logger.error("cycle_completed", **event)
    elif event.get("failed"):
        logger.warning("cycle_completed", **event)
    else:
        logger.info("cycle_completed", **event)
    return event


def add_cycle_id(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Processor to add the current cycle number to all log entries."""
    current_event = _cycle_event.get()
    if current_event and "cycle" not in event_dict:
        event_dict["cycle"] = current_event["cycle"]
    return event_dict


def configure_logging(json_logs: bool = True, log_level: str = "INFO") -> None:
    """
    Configure structlog.

    Args:
        json_logs: If True, output JSON format (for production).
                   If False, output colored console format (for development).
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        add_cycle_id,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries (httpx, sqlalchemy) log through the stdlib
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
    )
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
