"""RRULE expansion logic for calley_recurrence.

Turns a recurring parent record into the concrete occurrences that overlap a
query window, honoring excluded instants and per-occurrence overrides.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

from dateutil.rrule import rruleset

from ..core.config_loader import EngineConfig
from ..core.timezone_utils import InstantLike, parse_instant
from ..exceptions import InvalidRuleError
from .models import ExceptionOverride, ExpandedInstance, RecurringItem
from .rrule_parser import RuleParser

logger = logging.getLogger(__name__)

ZERO = timedelta(0)


def overlaps_window(
    start: Optional[datetime],
    end: Optional[datetime],
    window_start: datetime,
    window_end: datetime,
) -> bool:
    """True iff ``start < window_end and end > window_start``."""
    if start is None or end is None:
        return False
    return start < window_end and end > window_start


def apply_override(
    item: RecurringItem,
    exception: ExceptionOverride,
    original_duration: Optional[timedelta] = None,
) -> RecurringItem:
    """Apply an exception's sparse overrides to a materialized occurrence.

    If only the start moves, the end follows at the original duration; if
    both move they are taken as given. An end that lands before the start is
    clamped to the start and logged, never returned.

    Args:
        item: Occurrence copy of the series (bounds already set)
        exception: Exception whose overrides are applied
        original_duration: Natural length of the occurrence (defaults to the
            item's own bounds)

    Returns:
        New item with overrides applied
    """
    start_field, end_field = item.START_FIELD, item.END_FIELD
    start, end = item.bounds()

    duration = original_duration
    if duration is None:
        duration = (end - start) if start is not None and end is not None else ZERO
    if duration < ZERO:
        duration = ZERO

    changes = exception.overrides.changes(include_rrule=False)

    known_fields = type(item).model_fields
    unknown = [name for name in changes if name not in known_fields]
    if unknown:
        logger.warning(
            "Exception %s carries fields unknown to %s records, ignoring: %s",
            exception.id,
            item.KIND,
            sorted(unknown),
        )

    domain_changes = {
        name: value
        for name, value in changes.items()
        if name in known_fields and name not in (start_field, end_field)
    }

    start_set = start_field in changes
    end_set = end_field != start_field and end_field in changes

    new_start = changes[start_field] if start_set else start
    if end_set:
        new_end = changes[end_field]
    elif start_set:
        new_end = new_start + duration if new_start is not None else None
    else:
        new_end = end

    if new_start is not None and new_end is not None and new_end < new_start:
        logger.warning(
            "Exception %s for series %s ends before it starts (%s < %s); clamping end to start",
            exception.id,
            exception.series_id,
            new_end.isoformat(),
            new_start.isoformat(),
        )
        new_end = new_start

    return item.with_changes(domain_changes).with_bounds(new_start, new_end)


class RecurrenceExpander:
    """Expands recurring parents into ordered occurrence instances.

    Pure and synchronous: every call works only on its arguments, so one
    expander may be shared across concurrent requests.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        rule_parser: Optional[RuleParser] = None,
    ):
        self.config = config or EngineConfig()
        self.rule_parser = rule_parser or RuleParser(self.config)
        self.max_instances = self.config.max_instances_per_series

    def expand(
        self,
        series: RecurringItem,
        window_start: InstantLike,
        window_end: InstantLike,
        exceptions: Iterable[ExceptionOverride] = (),
    ) -> list[ExpandedInstance]:
        """Materialize the occurrences of ``series`` overlapping ``[window_start, window_end)``.

        Non-recurring items and exception-instance records are returned
        unmodified as a single pseudo-instance.

        Args:
            series: Recurring parent (or any item, which then passes through)
            window_start: Inclusive window start (ISO-8601 or datetime)
            window_end: Exclusive window end (ISO-8601 or datetime)
            exceptions: Candidate overrides; those of other series are ignored

        Returns:
            Instances ordered by their (possibly overridden) start

        Raises:
            ValueError: If the window bounds are unparseable or reversed
        """
        if not series.is_series:
            return [ExpandedInstance(item=series)]

        ws = parse_instant(window_start)
        we = parse_instant(window_end)
        if we < ws:
            raise ValueError("window_end must not be before window_start")

        start, end = series.bounds()
        if start is None:
            logger.warning("Recurring %s %s has no anchor instant; skipping expansion", series.KIND, series.id)
            return []

        duration = end - start if end is not None else ZERO
        if duration < ZERO:
            logger.warning(
                "Series %s has negative duration (%s); treating as zero-length",
                series.id,
                duration,
            )
            duration = ZERO

        try:
            occurrence_set = self.rule_parser.iterate(series.rrule, start, series.ex_dates)
        except InvalidRuleError as e:
            logger.warning(
                "Failed to parse RRULE %r for series %s, skipping expansion: %s",
                series.rrule,
                series.id,
                e,
            )
            return []

        exception_map = self._build_exception_map(series.id, exceptions)

        # Shifted lower bound catches occurrences that start before the window
        # but whose duration reaches into it.
        lower = ws - duration
        occurrences = self._collect_occurrences(occurrence_set, lower, we, series.id)

        instances: list[ExpandedInstance] = []
        for occurrence in occurrences:
            instance = self._materialize(series, occurrence, duration, exception_map.get(occurrence))
            if overlaps_window(instance.start_at, instance.end_at, ws, we):
                instances.append(instance)

        # Overrides may move occurrences from outside the scanned range into the window.
        for instant, exception in exception_map.items():
            if lower < instant < we:
                continue
            instance = self._materialize(series, instant, duration, exception)
            if not overlaps_window(instance.start_at, instance.end_at, ws, we):
                continue
            if not self._is_occurrence(occurrence_set, instant):
                logger.debug(
                    "Ignoring orphaned exception %s for series %s at %s",
                    exception.id,
                    series.id,
                    instant.isoformat(),
                )
                continue
            instances.append(instance)

        instances.sort(key=lambda inst: (inst.start_at, inst.occurrence_instant))

        logger.debug(
            "Expanded series %s: %d instances in [%s, %s)",
            series.id,
            len(instances),
            ws.isoformat(),
            we.isoformat(),
        )
        return instances

    def expand_many(
        self,
        items: Iterable[RecurringItem],
        window_start: InstantLike,
        window_end: InstantLike,
        exceptions: Iterable[ExceptionOverride] = (),
    ) -> list[ExpandedInstance]:
        """Expand several items against one window and merge the results by start."""
        by_series: dict[str, list[ExceptionOverride]] = {}
        for exception in exceptions:
            by_series.setdefault(exception.series_id, []).append(exception)

        merged: list[ExpandedInstance] = []
        for item in items:
            merged.extend(
                self.expand(item, window_start, window_end, by_series.get(item.id, ()))
            )

        # Undated items (tasks without a due date) sort last.
        dated = [inst for inst in merged if inst.start_at is not None]
        undated = [inst for inst in merged if inst.start_at is None]
        dated.sort(key=lambda inst: (inst.start_at, inst.occurrence_instant or inst.start_at))
        return dated + undated

    def _build_exception_map(
        self,
        series_id: str,
        exceptions: Iterable[ExceptionOverride],
    ) -> dict[datetime, ExceptionOverride]:
        """Index live exceptions of ``series_id`` by their pre-override instant."""
        exception_map: dict[datetime, ExceptionOverride] = {}
        for exception in exceptions:
            if exception.series_id != series_id or not exception.is_live:
                continue
            existing = exception_map.get(exception.occurrence_instant)
            if existing is not None:
                logger.warning(
                    "Multiple live exceptions for series %s at %s; using the most recent",
                    series_id,
                    exception.occurrence_instant.isoformat(),
                )
                if existing.updated_at > exception.updated_at:
                    continue
            exception_map[exception.occurrence_instant] = exception
        return exception_map

    def _collect_occurrences(
        self,
        occurrence_set: rruleset,
        lower: datetime,
        upper: datetime,
        series_id: str,
    ) -> list[datetime]:
        """Occurrences strictly between ``lower`` and ``upper``, capped at max_instances."""
        collected: list[datetime] = []
        for occurrence in occurrence_set.xafter(lower, inc=False):
            if occurrence >= upper:
                break
            if len(collected) >= self.max_instances:
                logger.warning(
                    "Recurring series %s expansion capped at %d instances; result is truncated",
                    series_id,
                    self.max_instances,
                )
                break
            collected.append(occurrence)
        return collected

    @staticmethod
    def _is_occurrence(occurrence_set: rruleset, instant: datetime) -> bool:
        """True if the rule (after exclusions) really generates ``instant``."""
        return occurrence_set.after(instant, inc=True) == instant

    @staticmethod
    def _materialize(
        series: RecurringItem,
        occurrence: datetime,
        duration: timedelta,
        exception: Optional[ExceptionOverride],
    ) -> ExpandedInstance:
        item = series.with_bounds(occurrence, occurrence + duration)
        if exception is not None:
            item = apply_override(item, exception, duration)
        return ExpandedInstance(
            item=item,
            occurrence_instant=occurrence,
            exception_id=exception.id if exception is not None else None,
        )


_default_expander: Optional[RecurrenceExpander] = None


def get_expander(config: Optional[EngineConfig] = None) -> RecurrenceExpander:
    """Get or create the shared expander (a fresh one when ``config`` is given)."""
    global _default_expander
    if config is not None:
        return RecurrenceExpander(config)
    if _default_expander is None:
        _default_expander = RecurrenceExpander()
    return _default_expander


def expand(
    series: RecurringItem,
    window_start: InstantLike,
    window_end: InstantLike,
    exceptions: Iterable[ExceptionOverride] = (),
) -> list[ExpandedInstance]:
    """Expand ``series`` with the shared default expander."""
    return get_expander().expand(series, window_start, window_end, exceptions)
