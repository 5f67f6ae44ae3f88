"""
Structured Logging
==================

JSON-structured logging with case/timer context.

Provides:
- Structured JSON logs (parseable by log aggregators)
- Case and timer identifiers attached to every engine log line
- Performance timing for sweeps and deliveries

Usage:
    from sla_engine.shared.infrastructure.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Timer paused", extra={"case_id": "CASE-001"})
"""

import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pythonjsonlogger import jsonlogger

_CONTEXT_KEYS = ("case_id", "timer_id", "metric", "tenant_id")
_SECRET_MARKERS = ("password", "secret", "api_key", "webhook_url")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for engine logs.

    Adds:
    - timestamp in ISO format (UTC)
    - case/timer context when present on the record
    - environment name
    """

    def __init__(self, *args: Any, environment: str = "unknown", **kwargs: Any):
        self._environment = environment
        super().__init__(*args, **kwargs)

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).isoformat()

        for key in _CONTEXT_KEYS:
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        log_record["environment"] = self._environment

        for key, value in list(log_record.items()):
            if isinstance(value, str) and any(m in key.lower() for m in _SECRET_MARKERS):
                log_record[key] = "***REDACTED***"


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
) -> None:
    """
    Configure structured JSON logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        environment: Environment name for log context
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))
    handler.setFormatter(CustomJsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        environment=environment,
    ))
    root_logger.addHandler(handler)

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


def get_context_logger(
    name: str,
    case_id: Optional[str] = None,
    timer_id: Optional[str] = None,
    **context: Any,
) -> Union[logging.Logger, logging.LoggerAdapter]:
    """
    Get a logger that stamps case/timer identifiers on every record.

    Args:
        name: Logger name
        case_id: Case the log lines are about
        timer_id: Timer instance the log lines are about
        **context: Additional constant fields (metric, tenant_id)

    Returns:
        Logger, or LoggerAdapter when any context was given
    """
    logger = get_logger(name)
    extra = {k: v for k, v in {"case_id": case_id, "timer_id": timer_id, **context}.items()
             if v is not None}
    if extra:
        return logging.LoggerAdapter(logger, extra)
    return logger


@contextmanager
def log_latency(logger: logging.Logger, operation: str, **extra_context: Any):
    """
    Context manager for measuring and logging operation latency.

    Usage:
        with log_latency(logger, "sweep", timers=len(running)):
            await engine.sweep()
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"{operation} completed",
            extra={
                "operation": operation,
                "latency_ms": round(latency_ms, 2),
                **extra_context,
            },
        )
