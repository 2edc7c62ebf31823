"""
Structured logging for Kiln processes.

Every process (API, worker pool, reaper, remote scheduler) calls
``setup_logging`` once at start-up. Library modules keep using
``logging.getLogger(__name__)`` with ``extra={...}``; the stdlib records
are rendered by structlog together with the bound task context and the
current trace ids.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from kiln.config import get_settings

# Libraries that log every command or request at INFO
NOISY_LOGGERS = ("pymongo", "motor", "uvicorn.access", "httpx", "httpcore")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current span's trace and span ids, when a span is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(
    process: str,
    log_level: str | None = None,
    log_format: str | None = None,
) -> None:
    """
    Route structlog and stdlib logging through one formatter.

    Args:
        process: Role of this process ("api", "worker", "reaper",
            "scheduler"); added to every event.
        log_level: Overrides the configured level.
        log_format: Overrides the configured renderer ("json" or "console").
    """
    settings = get_settings()
    level = logging.getLevelName((log_level or settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(log_format or settings.log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        process=process,
        collection=settings.mongodb_collection,
    )


def bind_task_context(task_id: str | None, worker: str) -> None:
    """Tag every event logged by the current coroutine with the task it runs."""
    structlog.contextvars.bind_contextvars(task_id=task_id, worker=worker)


def clear_task_context() -> None:
    """Drop the task tags bound by ``bind_task_context``."""
    structlog.contextvars.unbind_contextvars("task_id", "worker")
