"""Event and task services built on the shared recurrence engine.

Both services are the same `SeriesService` specialised to a record type;
they add ownership checks and window listing on top of the expander and
the mutation coordinator.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import ValidationError

from ..calendar.models import (
    AppliedResult,
    EditScope,
    EventSeries,
    ExpandedInstance,
    RecurringItem,
    TaskSeries,
    new_id,
)
from ..calendar.rrule_expander import RecurrenceExpander, overlaps_window
from ..calendar.rrule_parser import RuleParser
from ..core.config_loader import EngineConfig
from ..core.timezone_utils import InstantLike, now_utc, parse_instant
from ..exceptions import MutationValidationError, SeriesNotFoundError
from .mutation_coordinator import PayloadLike, ScopedMutationCoordinator
from .series_store import InMemorySeriesStore, InsertSeries, SeriesLockRegistry, SeriesRepository

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT", bound=RecurringItem)


class SeriesService(Generic[ItemT]):
    """CRUD plus windowed listing for one kind of recurrable record."""

    def __init__(
        self,
        item_type: type[ItemT],
        repository: Optional[SeriesRepository] = None,
        config: Optional[EngineConfig] = None,
        coordinator: Optional[ScopedMutationCoordinator] = None,
        expander: Optional[RecurrenceExpander] = None,
    ):
        self.item_type = item_type
        self.config = config or EngineConfig()
        self.repository = repository if repository is not None else InMemorySeriesStore()
        self.rule_parser = RuleParser(self.config)
        self.expander = expander or RecurrenceExpander(self.config, self.rule_parser)
        self.coordinator = coordinator or ScopedMutationCoordinator(
            self.repository, self.config, self.rule_parser, SeriesLockRegistry()
        )

    def create(self, user_id: str, record: Union[ItemT, Mapping[str, Any]]) -> ItemT:
        """Store a new record owned by ``user_id``.

        Raises:
            InvalidRuleError: If the record carries an unacceptable RRULE
            MutationValidationError: If the record is malformed or ends before it starts
        """
        item = self._coerce_record(user_id, record)

        if item.rrule is not None:
            item = item.model_copy(update={"rrule": self.rule_parser.parse(item.rrule).to_string()})
            if item.bounds()[0] is None:
                raise MutationValidationError(
                    f"A recurring {item.KIND} needs {item.START_FIELD}"
                )

        start, end = item.bounds()
        if start is not None and end is not None and end < start:
            raise MutationValidationError(f"{item.END_FIELD} must not be before {item.START_FIELD}")

        self.repository.apply([InsertSeries(item)])
        logger.info("%s %s created (user=%s, recurring=%s)", item.KIND.capitalize(), item.id, user_id, item.is_series)
        return item

    def get(self, user_id: str, item_id: str) -> ItemT:
        """Get a live record owned by ``user_id``.

        Raises:
            SeriesNotFoundError: If missing, tombstoned, foreign, or of another kind
        """
        item = self.repository.get_series(item_id)
        if (
            item is None
            or item.is_deleted
            or item.user_id != user_id
            or not isinstance(item, self.item_type)
        ):
            raise SeriesNotFoundError(f"{self.item_type.KIND.capitalize()} not found", series_id=item_id)
        return item

    def list_occurrences(
        self,
        user_id: str,
        window_start: InstantLike,
        window_end: Optional[InstantLike] = None,
        category_ids: Optional[Iterable[str]] = None,
        include_undated: bool = False,
    ) -> list[ExpandedInstance]:
        """Occurrences of the user's records overlapping the window, ordered by start.

        Recurring parents are expanded; standalone records pass through when
        they overlap the window. Without ``window_end`` the configured
        default window length is used.
        """
        ws = parse_instant(window_start)
        we = (
            parse_instant(window_end)
            if window_end is not None
            else ws + timedelta(days=self.config.default_window_days)
        )
        categories = set(category_ids) if category_ids is not None else None

        selected: list[RecurringItem] = []
        for item in self.repository.list_series(user_id):
            if not isinstance(item, self.item_type):
                continue
            if categories is not None and getattr(item, "category_id", None) not in categories:
                continue
            if item.is_series:
                selected.append(item)
                continue
            if item.recurring_parent_id is not None:
                continue
            start, end = item.bounds()
            if start is None:
                if include_undated:
                    selected.append(item)
                continue
            if overlaps_window(start, end, ws, we):
                selected.append(item)

        exceptions = []
        for item in selected:
            if item.is_series:
                exceptions.extend(self.repository.get_exceptions(item.id))

        instances = self.expander.expand_many(selected, ws, we, exceptions)
        logger.debug(
            "Listed %d %s occurrences for user %s from %d records",
            len(instances),
            self.item_type.KIND,
            user_id,
            len(selected),
        )
        return instances

    def update(
        self,
        user_id: str,
        item_id: str,
        payload: PayloadLike,
        scope: Union[EditScope, str, None] = None,
        instance_date: Optional[InstantLike] = None,
    ) -> AppliedResult:
        self.get(user_id, item_id)
        return self.coordinator.update(user_id, item_id, payload, scope, instance_date)

    def delete(
        self,
        user_id: str,
        item_id: str,
        scope: Union[EditScope, str, None] = None,
        instance_date: Optional[InstantLike] = None,
    ) -> AppliedResult:
        self.get(user_id, item_id)
        return self.coordinator.delete(user_id, item_id, scope, instance_date)

    def duplicate(self, user_id: str, item_id: str) -> ItemT:
        """Standalone copy of a record: no recurrence, no parent link."""
        source = self.get(user_id, item_id)
        now = now_utc()
        fields = source.domain_fields()
        fields.update(
            {
                "id": new_id(),
                "user_id": user_id,
                "rrule": None,
                "ex_dates": [],
                "recurring_parent_id": None,
                "original_date": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        copy = self.item_type.model_validate(fields)
        self.repository.apply([InsertSeries(copy)])
        logger.info("%s %s duplicated as %s (user=%s)", source.KIND.capitalize(), source.id, copy.id, user_id)
        return copy

    def _coerce_record(self, user_id: str, record: Union[ItemT, Mapping[str, Any]]) -> ItemT:
        if isinstance(record, RecurringItem):
            if not isinstance(record, self.item_type):
                raise MutationValidationError(
                    f"Expected a {self.item_type.KIND}, got a {record.KIND}"
                )
            return record.model_copy(update={"user_id": user_id})
        try:
            return self.item_type.model_validate({**dict(record), "user_id": user_id})
        except ValidationError as e:
            raise MutationValidationError(f"Invalid {self.item_type.KIND}: {e}") from e


class EventService(SeriesService[EventSeries]):
    """Calendar events."""

    def __init__(self, repository: Optional[SeriesRepository] = None, **kwargs: Any):
        super().__init__(EventSeries, repository, **kwargs)


class TaskService(SeriesService[TaskSeries]):
    """Tasks; a recurring task repeats its due instant."""

    def __init__(self, repository: Optional[SeriesRepository] = None, **kwargs: Any):
        super().__init__(TaskSeries, repository, **kwargs)
