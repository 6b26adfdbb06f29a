"""Structured logging via structlog.

Configures structlog once at application startup. Modules keep using
``logging.getLogger(__name__)``; a `ProcessorFormatter` on the root handler
runs those records through the same processors and renderer.

Renderer selection:
  debug=True : `ConsoleRenderer` with colours for local development.
  debug=False: `JSONRenderer` for machine-parseable logs in production.

The `request_id` of the upload or webhook being handled is injected into
every log line from the ContextVar set by `RequestIdMiddleware`.
"""

from __future__ import annotations

import logging
import sys

import structlog

from buildrelay.core.middleware import get_request_id


def _inject_request_id(
    logger: logging.Logger,
    method: str,
    event_dict: dict,
) -> dict:
    """Structlog processor: inject request_id from the ContextVar."""
    request_id = get_request_id()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def configure_structlog(debug: bool = True) -> None:
    """Configure structlog and the stdlib root logger for the application lifetime.

    Call once from `create_app()` before any routers are registered.
    Calling it again replaces the root handler rather than adding another.
    """
    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_request_id,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    # Records from logging.getLogger(__name__) (ours, httpx, minio) run
    # through the same processors as structlog's own events.
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)
