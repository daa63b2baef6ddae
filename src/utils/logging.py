"""structlog setup shared by the export, import and clone-s3 commands."""

import logging
import sys
import uuid
from typing import Any, Optional

import structlog

LOGGER_NAMESPACE = "porter"
NOISY_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer", "faker")


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    run_id: Optional[str] = None,
) -> structlog.BoundLogger:
    """Route structlog through stdlib logging on stderr.

    Stdout is left to command summaries. ``run_id`` is bound through
    contextvars, so every event logged from this context carries it.

    Args:
        log_level: DEBUG, INFO, WARN, ERROR or CRITICAL
        log_format: 'json' or 'console'
        run_id: Identifier for this invocation (generated if omitted)

    Returns:
        Root porter logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    renderer: Any
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(run_id=run_id or new_run_id())
    return get_logger()


def quiet_third_party_loggers(level: int = logging.WARNING) -> None:
    """Hold chatty library loggers at ``level`` so DEBUG output stays readable."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger under the ``porter`` namespace, e.g. ``get_logger("exporter")``."""
    if not name:
        return structlog.get_logger(LOGGER_NAMESPACE)
    if name.startswith(LOGGER_NAMESPACE + "."):
        return structlog.get_logger(name)
    return structlog.get_logger(f"{LOGGER_NAMESPACE}.{name}")
