"""Logging and error tracking setup for billing processes."""

from __future__ import annotations

import logging
import sys
from typing import Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from botflow_billing import __version__

SERVICE_NAME = "botflow-billing"


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog for billing jobs and the CLI.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Render JSON lines instead of the coloured console format

    Returns:
        Logger bound with the service name
    """
    log_level = log_level.upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates when called twice
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(SERVICE_NAME))


def init_sentry(dsn: str | None, environment: str = "development") -> bool:
    """Initialize Sentry error tracking when a DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"{SERVICE_NAME}@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            HttpxIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        server_name=SERVICE_NAME,
    )
    sentry_sdk.set_tag("service", SERVICE_NAME)
    return True
