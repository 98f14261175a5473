"""
Structured logging for the Access Layer.

Services call ``configure_logging`` once at start-up and obtain loggers with
``get_logger("<service>.<component>")``. Per-request fields (request id,
identity key, user id) are bound with structlog's contextvars support so
every event logged while handling a request carries them.
"""

import logging
import sys
import uuid
from typing import Any, Dict, Optional

import structlog


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structlog on top of the stdlib logging bridge."""
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_name,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def add_service_name(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Derive ``service`` from a dotted logger name like ``gateway.admission``."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict.setdefault("service", logger_name.split(".", 1)[0])
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (generated when absent) to the current context."""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def set_identity_context(identity_key: str, user_id: Optional[str] = None) -> None:
    """Bind the resolved caller to the current context."""
    structlog.contextvars.bind_contextvars(identity_key=identity_key)
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
