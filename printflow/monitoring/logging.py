"""
Structured logging for the API and the worker processes.

structlog events and plain stdlib records (uvicorn, sqlalchemy, stripe) are
written by the same python-json-logger handler, one JSON document per line
on stdout. Every line carries the process fields: app name, environment,
role (``api``, ``render_worker``, ``maintenance``) and, for workers, the
worker id.
"""
import logging
import sys
from typing import Any, Dict, Optional, Tuple

import structlog
from pythonjsonlogger.json import JsonFormatter

from printflow.config import Settings, get_settings

LIBRARY_LOG_LEVELS = {
    # SQL echo is controlled by database_echo, not the root level
    "sqlalchemy.engine": logging.WARNING,
    "stripe": logging.INFO,
}


def process_fields(
    settings: Settings, role: str, worker_id: Optional[str] = None
) -> Dict[str, Any]:
    """Fields stamped on every line this process writes."""
    fields: Dict[str, Any] = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "role": role,
    }
    if worker_id:
        fields["worker_id"] = worker_id
    return fields


def event_to_record(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Tuple[Tuple[Dict[str, Any]], Dict[str, Any]]:
    """
    Hand the event dict to stdlib logging as the record message.

    JsonFormatter merges a dict message into the output, so event fields
    become top-level keys and the event name becomes ``message``.
    """
    event_dict["message"] = event_dict.pop("event", "")
    return (event_dict,), {}


def build_formatter(fields: Dict[str, Any]) -> JsonFormatter:
    return JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        rename_fields={
            "asctime": "@timestamp",
            "levelname": "level",
            "name": "logger",
        },
        static_fields=fields,
    )


def setup_logging(
    settings: Optional[Settings] = None,
    role: str = "api",
    worker_id: Optional[str] = None,
) -> None:
    """
    Configure structlog and the root logger for this process.

    Args:
        settings: Settings whose app name, environment and log level to use
        role: Process role recorded on every line
        worker_id: Worker id recorded on every line, for worker processes
    """
    settings = settings or get_settings()
    fields = process_fields(settings, role, worker_id)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            event_to_record,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(fields))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name, level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)
