"""Shared fixtures for calley_recurrence tests."""

from datetime import datetime, timezone

import pytest

from calley_recurrence.calendar.models import EventSeries, TaskSeries
from calley_recurrence.calendar.rrule_expander import RecurrenceExpander
from calley_recurrence.calendar.rrule_parser import RuleParser
from calley_recurrence.core.config_loader import EngineConfig
from calley_recurrence.domain.mutation_coordinator import ScopedMutationCoordinator
from calley_recurrence.domain.series_store import InMemorySeriesStore, InsertSeries

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    """Build an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def config() -> EngineConfig:
    """Default engine configuration."""
    return EngineConfig()


@pytest.fixture
def rule_parser(config: EngineConfig) -> RuleParser:
    return RuleParser(config)


@pytest.fixture
def expander(config: EngineConfig, rule_parser: RuleParser) -> RecurrenceExpander:
    return RecurrenceExpander(config, rule_parser)


@pytest.fixture
def store() -> InMemorySeriesStore:
    """Empty in-memory store."""
    return InMemorySeriesStore()


@pytest.fixture
def coordinator(store: InMemorySeriesStore, config: EngineConfig) -> ScopedMutationCoordinator:
    return ScopedMutationCoordinator(store, config)


@pytest.fixture
def weekly_event() -> EventSeries:
    """Weekly Monday 10:00-11:00 UTC event starting 2026-03-02."""
    return EventSeries(
        id="series-weekly",
        user_id=USER_ID,
        title="Standup",
        start_at=utc(2026, 3, 2, 10),
        end_at=utc(2026, 3, 2, 11),
        rrule="FREQ=WEEKLY;BYDAY=MO",
    )


@pytest.fixture
def weekly_task() -> TaskSeries:
    """Weekly Monday task due 09:00 UTC starting 2026-03-02."""
    return TaskSeries(
        id="task-weekly",
        user_id=USER_ID,
        title="Report",
        due_at=utc(2026, 3, 2, 9),
        rrule="FREQ=WEEKLY;BYDAY=MO",
        priority="medium",
    )


@pytest.fixture
def stored_event(store: InMemorySeriesStore, weekly_event: EventSeries) -> EventSeries:
    """The weekly event, persisted."""
    store.apply([InsertSeries(weekly_event)])
    return weekly_event


@pytest.fixture
def stored_task(store: InMemorySeriesStore, weekly_task: TaskSeries) -> TaskSeries:
    """The weekly task, persisted."""
    store.apply([InsertSeries(weekly_task)])
    return weekly_task
