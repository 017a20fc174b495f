"""
structlog configuration for the API process and the drip worker.

JSON lines in every environment except development, where the console
renderer is easier to read. Context bound with ``bind_job_context`` is merged
into every entry logged while a queue job is being processed.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

from app.config import settings

SERVICE_NAME = "go-leadership-drip"

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "uvicorn.access")


def setup_logging(log_level: str = "INFO", *, json_output: bool | None = None) -> None:
    """
    Configure structlog on top of the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: Force JSON (True) or console (False) rendering.
            Defaults to JSON outside development.
    """
    if json_output is None:
        json_output = settings.environment != "development"

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_name,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer formats exceptions itself
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_service_name(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bind_job_context(**context: Any):
    """Attach job identifiers to every log entry emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**context):
        yield


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str | None = None):
    """One entry per dependency check, at error level when the check failed."""
    logger = get_logger("health")
    fields: dict[str, Any] = {"component": service, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        fields["error"] = error
    if healthy:
        logger.info("Health check passed", **fields)
    else:
        logger.error("Health check failed", **fields)
