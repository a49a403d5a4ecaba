"""
Structured logging for the marketplace cache layer.

Events are rendered as one JSON object per line. Each event carries the
emitting component (``cache`` for ``cache.service``), the active OpenTelemetry
trace when there is one, and the run id the CLI tags each invocation with.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO

import structlog
from opentelemetry import trace

run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)


def configure_logging(service_name: str, log_level: str = "info", stream: Optional[TextIO] = None) -> None:
    """Route structlog through stdlib logging and render JSON to ``stream`` (stdout by default)."""
    level = getattr(logging, log_level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_component,
            add_trace_ids,
            add_run_id,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=stream or sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".", 1)[0]
    return event_dict


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict

    span_context = span.get_span_context()
    if span_context.trace_id:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
    if span_context.span_id:
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_run_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    run_id = run_id_var.get()
    if run_id:
        event_dict["run_id"] = run_id
    return event_dict


def set_run_id(run_id: Optional[str] = None) -> str:
    """Tag every following event in this context with ``run_id`` (a fresh uuid by default)."""
    run_id = run_id or uuid.uuid4().hex
    run_id_var.set(run_id)
    return run_id


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)
