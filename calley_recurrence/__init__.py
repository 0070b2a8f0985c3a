"""calley_recurrence - recurrence engine for recurring calendar events and tasks.

Expands RRULE-based series into concrete occurrences over a time window and
applies scoped (instance / following / all) edits and deletes to them.
"""

__version__ = "0.1.0"

from typing import Optional

from .calendar.models import (
    AppliedResult,
    EditScope,
    EventChanges,
    EventSeries,
    ExceptionOverride,
    ExpandedInstance,
    MutationKind,
    RecurringItem,
    TaskChanges,
    TaskSeries,
)
from .calendar.rrule_expander import RecurrenceExpander, apply_override, expand
from .calendar.rrule_parser import RecurrenceRule, RuleParser, validate_rule
from .core.config_loader import EngineConfig, load_config
from .domain.mutation_coordinator import ScopedMutationCoordinator
from .domain.series_store import InMemorySeriesStore, SeriesLockRegistry
from .domain.services import EventService, SeriesService, TaskService
from .exceptions import (
    ExceptionConflictError,
    InvalidRuleError,
    MissingInstanceDateError,
    MutationValidationError,
    PersistenceError,
    RecurrenceEngineError,
    SeriesNotFoundError,
)

__all__ = [
    "AppliedResult",
    "EditScope",
    "EngineConfig",
    "EventChanges",
    "EventSeries",
    "EventService",
    "ExceptionConflictError",
    "ExceptionOverride",
    "ExpandedInstance",
    "InMemorySeriesStore",
    "InvalidRuleError",
    "MissingInstanceDateError",
    "MutationKind",
    "MutationValidationError",
    "PersistenceError",
    "RecurrenceEngineError",
    "RecurrenceExpander",
    "RecurrenceRule",
    "RecurringItem",
    "RuleParser",
    "ScopedMutationCoordinator",
    "SeriesLockRegistry",
    "SeriesNotFoundError",
    "SeriesService",
    "TaskChanges",
    "TaskSeries",
    "TaskService",
    "apply_override",
    "expand",
    "load_config",
    "validate_rule",
]


def _init_logging(level_name: Optional[str]) -> None:
    """Initialize root logging to stream to the console.

    Installs a colorized handler when the root logger has none yet and sets
    the root level. The CALLEY_DEBUG environment variable (truthy values:
    "1", "true", "yes", "on") forces DEBUG so expansion and mutation detail
    can be surfaced without code changes.
    """
    import logging
    import os
    import sys

    from colorlog import ColoredFormatter

    from .core.logging_config import CorrelationIdFilter

    debug_env = os.environ.get("CALLEY_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    root = logging.getLogger()
    # Only configure a handler if none is present to avoid duplicate output.
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        # HH:MM:SS [request] LEVEL   logger.name: message  (only the level is colorized)
        fmt = (
            "%(asctime)s [%(request_id)s] %(log_color)s%(levelname)-7s%(reset)s "
            "%(name)s: %(message)s"
        )
        log_colors = {
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        }
        handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S", log_colors=log_colors))
        handler.addFilter(CorrelationIdFilter())
        root.addHandler(handler)

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    logging.getLogger(__name__).debug(
        "Logging initialized at level %s", logging.getLevelName(level)
    )
