"""Structured logging setup."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from ops_agent import __version__


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    service_name: str = "ops-agent",
) -> None:
    """Configure stdlib logging and structlog.

    `log_format` selects the JSON renderer for log shipping or the console
    renderer for local runs. Logs go to stderr so that stdio tool providers
    spawned by the gateway never see them on stdout.
    """

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        service_fields(service_name),
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def service_fields(service_name: str = "ops-agent") -> Any:
    """Processor stamping every event with the service identity."""

    static = {
        "service": service_name,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "version": __version__,
    }

    def _add(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key, value in static.items():
            event_dict.setdefault(key, value)
        return event_dict

    return _add
