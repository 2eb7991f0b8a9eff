"""
structlog configuration for the sync worker.

Every entry is one JSON object on stdout with level, logger name, ISO
timestamp and the service name, plus whatever keyword context the call
site passed (``user_id``, ``entity``, ``week_label`` ...).
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

SERVICE_NAME = "workspace-sync"

# chatty at INFO: one line per HTTP request / pool checkout
NOISY_LOGGERS = ("httpx", "httpcore", "psycopg.pool")


def setup_logging(log_level: str = "INFO") -> None:
    """
    Route structlog through stdlib logging with JSON rendering.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL; unknown values fall back to INFO
    """
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_name,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
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

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _add_service_name(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the service name unless the call set one."""
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """Module logger; call as ``get_logger(__name__)``."""
    return structlog.get_logger(name)


def log_health_check(service: str, healthy: bool, latency_ms: float, error: str = None):
    """Emit one health-check entry: info when healthy, error otherwise."""
    fields: dict[str, Any] = {"service": service, "healthy": healthy, "latency_ms": latency_ms}
    if error:
        fields["error"] = error

    logger = get_logger("health")
    if healthy:
        logger.info("Health check passed", **fields)
    else:
        logger.error("Health check failed", **fields)
