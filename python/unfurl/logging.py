"""structlog configuration and logging context.

Every event is a snake_case name plus key/value fields:

    logger = get_logger(__name__)
    logger.info("link_preview_cache_hit", status="success")

Context bound through ContextVars is merged into each event, so a line
logged deep inside the pipeline still carries the request or task that
caused it and the link being processed:

- API requests: request_id, path, method (RequestIDMiddleware)
- Celery tasks: request_id of the enqueueing request, task_name, task_id
- Pipeline runs: url_hash, message_id

stdlib loggers (uvicorn, celery, httpx) are routed through the same
formatter.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

from unfurl.config import get_settings

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
path_var: ContextVar[str | None] = ContextVar("path", default=None)
method_var: ContextVar[str | None] = ContextVar("method", default=None)
task_name_var: ContextVar[str | None] = ContextVar("task_name", default=None)
task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)
url_hash_var: ContextVar[str | None] = ContextVar("url_hash", default=None)
message_id_var: ContextVar[str | None] = ContextVar("message_id", default=None)

_CONTEXT_VARS: tuple[tuple[str, ContextVar[str | None]], ...] = (
    ("request_id", request_id_var),
    ("path", path_var),
    ("method", method_var),
    ("task_name", task_name_var),
    ("task_id", task_id_var),
    ("url_hash", url_hash_var),
    ("message_id", message_id_var),
)

_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "PIL")


def add_context_fields(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Merge bound context into the event. Explicit fields win."""
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value and key not in event_dict:
            event_dict[key] = value
    return event_dict


def configure_logging(json_format: bool | None = None, level: str | None = None) -> None:
    """Install structlog and the root handler.

    Format and level default to LOG_FORMAT and LOG_LEVEL.
    """
    if json_format is None or level is None:
        settings = get_settings()
        if json_format is None:
            json_format = settings.log_format == "json"
        level = level or settings.log_level

    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# =============================================================================
# Request context
# =============================================================================


def set_request_context(
    request_id: str | None, path: str | None = None, method: str | None = None
) -> None:
    request_id_var.set(request_id)
    if path is not None:
        path_var.set(path)
    if method is not None:
        method_var.set(method)


def clear_request_context() -> None:
    request_id_var.set(None)
    path_var.set(None)
    method_var.set(None)


def get_request_id() -> str | None:
    """Request ID of the current request or task, if any."""
    return request_id_var.get()


# =============================================================================
# Pipeline context
# =============================================================================


def set_link_context(url_hash: str | None, message_id: str | None = None) -> None:
    """Bind the link being processed (and the message tracking it)."""
    url_hash_var.set(url_hash)
    message_id_var.set(message_id)


def clear_link_context() -> None:
    url_hash_var.set(None)
    message_id_var.set(None)


# =============================================================================
# Task context
# =============================================================================


def configure_task_logging(
    request_id: str | None = None,
    task_name: str | None = None,
    task_id: str | None = None,
) -> None:
    """Bind task context at the start of a Celery task.

    request_id is the ID of the API request that enqueued the task, so
    worker lines can be joined with the request that caused them.
    """
    request_id_var.set(request_id)
    task_name_var.set(task_name)
    task_id_var.set(task_id)


def clear_task_context() -> None:
    request_id_var.set(None)
    task_name_var.set(None)
    task_id_var.set(None)
    clear_link_context()
