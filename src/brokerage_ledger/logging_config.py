"""structlog setup for the ledger.

Events are keyed by session and run ids bound through ``LogContext``. Log
lines always go to stderr: stdout belongs to CLI reports such as
``validate --json``.
"""

import logging
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from brokerage_ledger.config import Settings, get_settings

_QUIET_LOGGERS = ("httpcore", "httpx", "asyncio")


def _add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    settings = get_settings()
    event_dict["app"] = settings.app_name
    event_dict["environment"] = settings.environment.value
    return event_dict


def _stringify_values(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Render ids, amounts and dates as plain strings for JSON output."""
    for key, value in event_dict.items():
        if isinstance(value, (UUID, Decimal, date)):
            event_dict[key] = str(value)
        elif isinstance(value, list) and any(isinstance(v, (UUID, Decimal)) for v in value):
            event_dict[key] = [str(v) if isinstance(v, (UUID, Decimal)) else v for v in value]
    return event_dict


def build_processors(json_output: bool) -> list[Processor]:
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        return [
            *shared,
            _add_app_context,
            _stringify_values,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    return [
        *shared,
        structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        ),
    ]


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger once at startup."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.value)

    structlog.configure(
        processors=build_processors(settings.log_format == "json"),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    if settings.log_file:
        _add_file_handler(settings.log_file, level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


def _add_file_handler(log_file: Path, level: int) -> None:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    logging.getLogger().addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module logger, e.g. ``logger.info("window_committed", cursor=30)``."""
    return structlog.stdlib.get_logger(name)


class LogContext:
    """Bind keys such as ``session_id`` for the duration of a with block."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.kwargs)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.kwargs)
