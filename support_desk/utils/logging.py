from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import structlog

_CONFIGURED_LEVEL: str | None = None


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def configure_logging(force: bool = False) -> None:
    global _CONFIGURED_LEVEL
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    if _CONFIGURED_LEVEL == level and not force:
        return
    numeric_level = getattr(logging, level, logging.INFO)
    logging.basicConfig(format="%(message)s", level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED_LEVEL = level


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name)


@contextmanager
def bound_context(**values: Any) -> Iterator[None]:
    """Attach connection or request identifiers to every log line in the block."""

    tokens = structlog.contextvars.bind_contextvars(**values)
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)
