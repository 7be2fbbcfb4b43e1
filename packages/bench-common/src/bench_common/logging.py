"""
Structured logging setup for ASR Bench Lab.

Configures structlog for JSON-formatted structured logging across the
harness, the analyzer and the CLI. Every log line includes timestamp,
level, service name, and event. Per-batch context (batch_id, sample_key)
is bound at processing time.
"""

from __future__ import annotations

import logging
import sys

import structlog


def configure_logging(
    level: str = "INFO",
    *,
    json: bool = True,
    service: str = "asr-bench",
) -> None:
    """Configure stdlib logging and structlog processors.

    Args:
        level: Minimum level name (``DEBUG`` … ``CRITICAL``).
        json: Render JSON lines; otherwise use the console renderer.
        service: Value of the ``service`` field on every line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level, force=True)

    def _add_service(
        _logger: object, _method: str, event_dict: structlog.typing.EventDict
    ) -> structlog.typing.EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    renderer: structlog.typing.Processor = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_service,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
