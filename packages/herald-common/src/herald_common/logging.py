"""
Structured logging setup for Herald.

Configures structlog for JSON-formatted structured logging. Every log
line includes timestamp, level, service name, and event. Per-request
context (request_id, channel, endpoint_id) is bound at dispatch time.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", service: str = "herald") -> None:
    """Install the structlog pipeline used by every Herald process.

    Args:
        level: Minimum log level name (``DEBUG``, ``INFO``, …).
        service: Service name added to every event.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _service_adder(service),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _service_adder(service: str) -> structlog.types.Processor:
    """Return a processor stamping ``service`` onto each event dict."""

    def _add_service(
        logger: object, method_name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return _add_service
