"""Scope-based update/delete of recurring events and tasks.

Which transition runs is derived per call from whether the target is a
series (has an RRULE) and which scope was requested:

- non-series target, or series without scope: direct update / soft delete
- scope ``all``: direct update / soft delete of the parent (delete also
  tombstones every exception of the series)
- scope ``instance``: exception override (update) or exDate (delete)
- scope ``following``: series split via an UNTIL rewrite

Every transition is one atomic `apply()` call, made while holding the
series lock so concurrent splits of the same series are serialized.
"""

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from pydantic import ValidationError

from ..calendar.models import (
    AppliedResult,
    EditScope,
    ExceptionOverride,
    MutationKind,
    RecurringItem,
    SeriesChanges,
    new_id,
)
from ..calendar.rrule_parser import RecurrenceRule, RuleParser
from ..core.config_loader import EngineConfig
from ..core.timezone_utils import (
    InstantLike,
    now_utc,
    parse_instant,
    serialize_instant,
    truncate_instant,
)
from ..exceptions import MissingInstanceDateError, MutationValidationError, SeriesNotFoundError
from .series_store import (
    ApplyResult,
    InsertException,
    InsertSeries,
    SeriesLockRegistry,
    SeriesRepository,
    StoreOp,
    TombstoneException,
    TombstoneSeries,
    UpdateSeries,
)

logger = logging.getLogger(__name__)

# UNTIL of a capped parent sits just before the split instant.
SPLIT_GAP = timedelta(milliseconds=1)

PayloadLike = Union[SeriesChanges, Mapping[str, Any], None]


class ScopedMutationCoordinator:
    """Applies instance / following / all mutations to recurring items."""

    def __init__(
        self,
        repository: SeriesRepository,
        config: Optional[EngineConfig] = None,
        rule_parser: Optional[RuleParser] = None,
        locks: Optional[SeriesLockRegistry] = None,
    ):
        self.repository = repository
        self.config = config or EngineConfig()
        self.rule_parser = rule_parser or RuleParser(self.config)
        self.locks = locks or SeriesLockRegistry()

    # Public API

    def mutate(
        self,
        kind: Union[MutationKind, str],
        user_id: str,
        target_id: str,
        payload: PayloadLike = None,
        scope: Union[EditScope, str, None] = None,
        instance_date: Optional[InstantLike] = None,
    ) -> AppliedResult:
        """Apply an update or delete with the given scope.

        Args:
            kind: ``update`` or ``delete``
            user_id: Caller; must own the target
            target_id: Series or standalone record id
            payload: Field changes (update only); a change record or a mapping
            scope: ``instance``, ``following``, ``all`` or None
            instance_date: Pre-override occurrence instant (required for
                ``instance`` and ``following``)

        Returns:
            AppliedResult describing the committed writes

        Raises:
            MutationValidationError: bad kind/scope/payload, or missing instance date
            InvalidRuleError: payload carries an unacceptable RRULE
            SeriesNotFoundError: target missing, tombstoned or owned by someone else
            ExceptionConflictError: passed through from the persistence layer
        """
        mutation_kind = _coerce_kind(kind)
        edit_scope = _coerce_scope(scope)

        with self.locks.hold(target_id):
            target = self._load_target(user_id, target_id)

            if mutation_kind is MutationKind.UPDATE:
                changes = self._coerce_payload(target, payload)
                return self._update(user_id, target, changes, edit_scope, instance_date)
            return self._delete(user_id, target, edit_scope, instance_date)

    def update(
        self,
        user_id: str,
        target_id: str,
        payload: PayloadLike,
        scope: Union[EditScope, str, None] = None,
        instance_date: Optional[InstantLike] = None,
    ) -> AppliedResult:
        return self.mutate(MutationKind.UPDATE, user_id, target_id, payload, scope, instance_date)

    def delete(
        self,
        user_id: str,
        target_id: str,
        scope: Union[EditScope, str, None] = None,
        instance_date: Optional[InstantLike] = None,
    ) -> AppliedResult:
        return self.mutate(MutationKind.DELETE, user_id, target_id, None, scope, instance_date)

    # Dispatch

    def _update(
        self,
        user_id: str,
        target: RecurringItem,
        changes: SeriesChanges,
        scope: Optional[EditScope],
        instance_date: Optional[InstantLike],
    ) -> AppliedResult:
        if changes.is_set("rrule") and changes.rrule is not None:
            self.rule_parser.validate(changes.rrule)

        if not target.is_series:
            return self._direct_update(target, changes, None)
        if scope is None or scope is EditScope.ALL:
            return self._direct_update(target, changes, EditScope.ALL)
        if scope is EditScope.INSTANCE:
            instant = _require_instant(instance_date, "editing a single instance")
            return self._update_instance(user_id, target, changes, instant)
        instant = _require_instant(instance_date, "editing following instances")
        return self._update_following(user_id, target, changes, instant)

    def _delete(
        self,
        user_id: str,
        target: RecurringItem,
        scope: Optional[EditScope],
        instance_date: Optional[InstantLike],
    ) -> AppliedResult:
        if not target.is_series:
            return self._direct_delete(target, None, cascade=False)
        if scope is None:
            return self._direct_delete(target, EditScope.ALL, cascade=False)
        if scope is EditScope.ALL:
            return self._direct_delete(target, EditScope.ALL, cascade=True)
        if scope is EditScope.INSTANCE:
            instant = _require_instant(instance_date, "deleting a single instance")
            return self._delete_instance(user_id, target, instant)
        instant = _require_instant(instance_date, "deleting following instances")
        return self._delete_following(user_id, target, instant)

    # Transitions

    def _direct_update(
        self,
        target: RecurringItem,
        changes: SeriesChanges,
        scope: Optional[EditScope],
    ) -> AppliedResult:
        """Update the record itself (non-recurring target or scope ``all``)."""
        values = changes.changes()
        if values.get("rrule") is not None:
            values["rrule"] = self.rule_parser.parse(values["rrule"]).to_string()

        _check_bounds(target.with_changes(values))

        result = self._commit([UpdateSeries(target.id, values)])
        logger.info(
            "%s %s updated (user=%s, scope=%s)",
            target.KIND.capitalize(),
            target.id,
            target.user_id,
            scope.value if scope else None,
        )
        return _applied(MutationKind.UPDATE, scope, target, result)

    def _direct_delete(
        self,
        target: RecurringItem,
        scope: Optional[EditScope],
        cascade: bool,
    ) -> AppliedResult:
        """Soft-delete the record; with ``cascade`` also every exception of the series."""
        ops: list[StoreOp] = []
        if cascade:
            ops.extend(
                TombstoneException(exc.id) for exc in self.repository.get_exceptions(target.id)
            )
        ops.append(TombstoneSeries(target.id))

        result = self._commit(ops)
        logger.info(
            "%s %s deleted (user=%s, scope=%s, exceptions=%d)",
            target.KIND.capitalize(),
            target.id,
            target.user_id,
            scope.value if scope else None,
            len(ops) - 1,
        )
        return _applied(MutationKind.DELETE, scope, target, result)

    def _update_instance(
        self,
        user_id: str,
        series: RecurringItem,
        changes: SeriesChanges,
        instant: datetime,
    ) -> AppliedResult:
        """Replace the override of a single occurrence with a new exception."""
        if changes.is_set("rrule"):
            logger.debug("Ignoring rrule in single-instance edit of series %s", series.id)
        overrides = changes.without_rrule()
        if overrides.is_empty:
            raise MutationValidationError("No per-instance changes supplied")

        start_field, end_field = series.START_FIELD, series.END_FIELD
        if overrides.is_set(start_field) and getattr(overrides, start_field) is None:
            raise MutationValidationError(f"An occurrence cannot have its {start_field} cleared")
        if start_field != end_field and overrides.is_set(start_field) and overrides.is_set(end_field):
            start, end = getattr(overrides, start_field), getattr(overrides, end_field)
            if start is not None and end is not None and end < start:
                raise MutationValidationError(f"{end_field} must not be before {start_field}")

        ops: list[StoreOp] = [
            TombstoneException(exc.id)
            for exc in self.repository.get_exceptions(series.id, [instant])
        ]
        exception = ExceptionOverride(
            series_id=series.id,
            user_id=user_id,
            series_kind=series.KIND,
            occurrence_instant=instant,
            overrides=overrides,
        )
        ops.append(InsertException(exception))

        result = self._commit(ops)
        logger.info(
            "Recurring %s instance updated (exception override): user=%s series=%s exception=%s instance=%s",
            series.KIND,
            user_id,
            series.id,
            exception.id,
            serialize_instant(instant),
        )
        return _applied(MutationKind.UPDATE, EditScope.INSTANCE, series, result, exception=exception)

    def _delete_instance(
        self,
        user_id: str,
        series: RecurringItem,
        instant: datetime,
    ) -> AppliedResult:
        """Exclude a single occurrence via exDates, dropping any override for it."""
        ops: list[StoreOp] = [
            TombstoneException(exc.id)
            for exc in self.repository.get_exceptions(series.id, [instant])
        ]
        ex_dates = sorted(set(series.ex_dates) | {instant})
        ops.append(UpdateSeries(series.id, {"ex_dates": ex_dates}))

        result = self._commit(ops)
        logger.info(
            "Recurring %s instance deleted: user=%s series=%s instance=%s",
            series.KIND,
            user_id,
            series.id,
            serialize_instant(instant),
        )
        return _applied(MutationKind.DELETE, EditScope.INSTANCE, series, result)

    def _update_following(
        self,
        user_id: str,
        series: RecurringItem,
        changes: SeriesChanges,
        instant: datetime,
    ) -> AppliedResult:
        """Split the series: cap the parent before ``instant`` and start an edited tail there."""
        rule = self.rule_parser.parse(series.rrule)
        first_start, _ = series.bounds()
        if first_start is None or instant <= first_start:
            logger.info(
                "Split of series %s at %s is at or before its first occurrence; updating whole series",
                series.id,
                serialize_instant(instant),
            )
            return self._direct_update(series, changes, EditScope.ALL)

        self._ensure_before_end(series, rule, instant)
        tail_rrule = self._tail_rule(series, rule, changes, instant)
        tail = self._build_tail(user_id, series, changes, instant, tail_rrule)

        ops: list[StoreOp] = [
            UpdateSeries(
                series.id,
                {
                    "rrule": rule.with_until(instant - SPLIT_GAP).to_string(),
                    "ex_dates": [d for d in series.ex_dates if d < instant],
                },
            )
        ]
        ops.extend(self._tombstone_from(series.id, instant))
        ops.append(InsertSeries(tail))

        result = self._commit(ops)
        logger.info(
            "Recurring %s series split: user=%s series=%s new_series=%s instance=%s",
            series.KIND,
            user_id,
            series.id,
            tail.id,
            serialize_instant(instant),
        )
        return _applied(MutationKind.UPDATE, EditScope.FOLLOWING, series, result, created=tail)

    def _delete_following(
        self,
        user_id: str,
        series: RecurringItem,
        instant: datetime,
    ) -> AppliedResult:
        """Cap the series before ``instant`` and drop overrides that can no longer apply."""
        rule = self.rule_parser.parse(series.rrule)
        first_start, _ = series.bounds()
        if first_start is None or instant <= first_start:
            logger.info(
                "Delete-following of series %s at %s covers every occurrence; deleting whole series",
                series.id,
                serialize_instant(instant),
            )
            return self._direct_delete(series, EditScope.ALL, cascade=True)

        self._ensure_before_end(series, rule, instant)
        ops: list[StoreOp] = [
            UpdateSeries(series.id, {"rrule": rule.with_until(instant - SPLIT_GAP).to_string()})
        ]
        ops.extend(self._tombstone_from(series.id, instant))

        result = self._commit(ops)
        logger.info(
            "Recurring %s following instances deleted: user=%s series=%s from=%s",
            series.KIND,
            user_id,
            series.id,
            serialize_instant(instant),
        )
        return _applied(MutationKind.DELETE, EditScope.FOLLOWING, series, result)

    # Helpers

    def _load_target(self, user_id: str, target_id: str) -> RecurringItem:
        target = self.repository.get_series(target_id)
        if target is None or target.is_deleted or target.user_id != user_id:
            raise SeriesNotFoundError("Series not found", series_id=target_id)
        return target

    def _coerce_payload(self, target: RecurringItem, payload: PayloadLike) -> SeriesChanges:
        model = target.CHANGES_MODEL
        if payload is None:
            raise MutationValidationError("Update requires a payload")
        if isinstance(payload, SeriesChanges):
            if not isinstance(payload, model):
                raise MutationValidationError(
                    f"{type(payload).__name__} cannot be applied to a {target.KIND}"
                )
            changes = payload
        else:
            try:
                changes = model.model_validate(dict(payload))
            except ValidationError as e:
                raise MutationValidationError(f"Invalid update payload: {e}") from e
        if changes.is_empty:
            raise MutationValidationError("Update payload contains no changes")
        return changes

    def _tombstone_from(self, series_id: str, instant: datetime) -> list[StoreOp]:
        return [
            TombstoneException(exc.id)
            for exc in self.repository.get_exceptions(series_id)
            if exc.occurrence_instant >= instant
        ]

    def _ensure_before_end(self, series: RecurringItem, rule: RecurrenceRule, instant: datetime) -> None:
        """Reject splits past the last occurrence; capping there would extend a bounded rule."""
        first_start, _ = series.bounds()
        if self.rule_parser.iterate(rule, first_start).after(instant, inc=True) is None:
            raise MutationValidationError(
                "instance_date is after the last occurrence of the series",
                instance_date=serialize_instant(instant),
            )

    def _tail_rule(
        self,
        series: RecurringItem,
        rule: RecurrenceRule,
        changes: SeriesChanges,
        instant: datetime,
    ) -> Optional[str]:
        """Rule for the new tail: the edited rule, or the parent's with COUNT carried over."""
        if changes.is_set("rrule"):
            if changes.rrule is None:
                return None
            return self.rule_parser.parse(changes.rrule).to_string()

        count = rule.count
        if count is None:
            return rule.to_string()

        # COUNT includes excluded instants, so count against the bare rule.
        first_start, _ = series.bounds()
        before = 0
        for occurrence in self.rule_parser.iterate(rule, first_start):
            if occurrence >= instant:
                break
            before += 1
        return rule.with_count(count - before).to_string()

    def _build_tail(
        self,
        user_id: str,
        series: RecurringItem,
        changes: SeriesChanges,
        instant: datetime,
        tail_rrule: Optional[str],
    ) -> RecurringItem:
        """New series starting at ``instant``: edited fields over the parent's current ones."""
        start_field, end_field = series.START_FIELD, series.END_FIELD
        duration = series.nominal_duration() or timedelta(0)
        if duration < timedelta(0):
            duration = timedelta(0)

        fields = series.domain_fields()
        fields.update(changes.changes(include_rrule=False))

        start = fields[start_field] if changes.is_set(start_field) else instant
        if start_field != end_field and changes.is_set(end_field):
            end = fields[end_field]
        else:
            end = start + duration if start is not None else None

        now = now_utc()
        fields.update(
            {
                "id": new_id(),
                "user_id": user_id,
                "rrule": tail_rrule,
                "ex_dates": [d for d in series.ex_dates if d >= instant],
                "created_at": now,
                "updated_at": now,
            }
        )
        tail = type(series).model_validate(fields).with_bounds(start, end)
        _check_bounds(tail)
        return tail

    def _commit(self, ops: list[StoreOp]) -> ApplyResult:
        return self.repository.apply(ops)


def _coerce_kind(kind: Union[MutationKind, str]) -> MutationKind:
    try:
        return MutationKind(kind)
    except ValueError as e:
        raise MutationValidationError(f"Invalid mutation kind: {kind}") from e


def _coerce_scope(scope: Union[EditScope, str, None]) -> Optional[EditScope]:
    if scope is None:
        return None
    try:
        return EditScope(scope)
    except ValueError as e:
        raise MutationValidationError(f"Invalid scope: {scope}") from e


def _require_instant(instance_date: Optional[InstantLike], action: str) -> datetime:
    if instance_date is None or (isinstance(instance_date, str) and not instance_date.strip()):
        raise MissingInstanceDateError(f"instanceDate is required when {action}")
    try:
        instant = parse_instant(instance_date)
    except ValueError as e:
        raise MutationValidationError(f"Invalid instanceDate: {instance_date!r}") from e
    # Occurrences are generated at whole seconds
    return truncate_instant(instant)


def _check_bounds(record: RecurringItem) -> None:
    """Reject series-level writes that would leave a record with end before start."""
    start, end = record.bounds()
    if start is not None and end is not None and end < start:
        raise MutationValidationError(
            f"{record.END_FIELD} must not be before {record.START_FIELD}"
        )
    if record.is_series and start is None:
        raise MutationValidationError(f"A recurring {record.KIND} needs {record.START_FIELD}")


def _applied(
    kind: MutationKind,
    scope: Optional[EditScope],
    target: RecurringItem,
    result: ApplyResult,
    exception: Optional[ExceptionOverride] = None,
    created: Optional[RecurringItem] = None,
) -> AppliedResult:
    tombstoned = [exc.id for exc in result.exceptions if not exc.is_live]
    return AppliedResult(
        kind=kind,
        scope=scope,
        target=result.series_by_id(target.id) or target,
        created_series=result.series_by_id(created.id) if created is not None else None,
        exception=exception,
        tombstoned_exception_ids=tombstoned,
    )
