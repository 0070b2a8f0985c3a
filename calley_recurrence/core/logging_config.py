"""
Central logging configuration for calley_recurrence.

Keeps engine diagnostics (data anomalies, occurrence ceiling hits, mutation
audit lines) visible while allowing debug verbosity to be switched on via
environment variables, and stamps every record with the request id of the
call that produced it.
"""

import logging
import os
from contextvars import ContextVar
from typing import Optional

from .config_loader import EngineConfig

# Request id of the current call; ContextVar keeps concurrent requests apart.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def set_request_id(request_id: str) -> None:
    """Bind ``request_id`` to the current execution context."""
    request_id_var.set(request_id)


def get_request_id() -> str:
    """Get the request id bound to the current context.

    Returns:
        The bound request id, or ``"no-request-id"`` outside a request
    """
    request_id = request_id_var.get()
    return request_id or "no-request-id"


class CorrelationIdFilter(logging.Filter):
    """Add correlation ID to all log records for distributed tracing."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add correlation ID to log record.

        Args:
            record: Log record to enhance

        Returns:
            True to allow record to be logged
        """
        record.request_id = get_request_id()
        return True


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

PACKAGE_LOGGERS = [
    "calley_recurrence",
    "calley_recurrence.calendar.rrule_parser",
    "calley_recurrence.calendar.rrule_expander",
    "calley_recurrence.domain.mutation_coordinator",
    "calley_recurrence.domain.series_store",
    "calley_recurrence.domain.services",
]


def configure_logging(
    debug_mode: bool = False,
    force_debug: Optional[bool] = None,
    config: Optional[EngineConfig] = None,
) -> None:
    """
    Configure logging levels for calley_recurrence.

    Args:
        debug_mode: Whether to enable debug logging for calley_recurrence modules
        force_debug: Override debug mode setting (None to use env var detection)
        config: Engine configuration whose ``log_level`` sets the root level
            when debug logging is off

    Environment Variables:
        CALLEY_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALLEY_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("CALLEY_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("CALLEY_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    config_level = config.log_level.upper() if config is not None else ""
    if not final_debug and config_level in LOG_LEVELS:
        root_level = getattr(logging, config_level)
    if env_log_level in LOG_LEVELS:
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    correlation_filter = CorrelationIdFilter()

    # Install the colorized console handler only if none exist yet
    if not root_logger.handlers:
        from .. import _init_logging

        _init_logging(logging.getLevelName(root_level))
        root_logger.setLevel(root_level)

    for existing_handler in root_logger.handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in existing_handler.filters):
            existing_handler.addFilter(correlation_filter)

    package_level = logging.DEBUG if final_debug else logging.INFO
    for module in PACKAGE_LOGGERS:
        logging.getLogger(module).setLevel(package_level)

    if final_debug:
        root_logger.info("Debug logging enabled for calley_recurrence modules")
    else:
        root_logger.info("Production logging configuration applied")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in PACKAGE_LOGGERS:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
