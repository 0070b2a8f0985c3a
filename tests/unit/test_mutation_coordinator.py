"""
Unit tests for calley_recurrence.domain.mutation_coordinator.

Covers every row of the scope transition table for events and tasks, the
following-split details, validation failures and atomicity.
"""
import logging
import threading
from datetime import datetime, timezone

import pytest

from calley_recurrence.calendar.models import (
    EditScope,
    EventChanges,
    EventSeries,
    ExceptionOverride,
    MutationKind,
    TaskChanges,
    TaskSeries,
)
from calley_recurrence.calendar.rrule_expander import RecurrenceExpander
from calley_recurrence.domain.mutation_coordinator import ScopedMutationCoordinator
from calley_recurrence.domain.series_store import InMemorySeriesStore, InsertException, InsertSeries
from calley_recurrence.exceptions import (
    InvalidRuleError,
    MissingInstanceDateError,
    MutationValidationError,
    PersistenceError,
    SeriesNotFoundError,
)

pytestmark = pytest.mark.unit

USER = "user-1"
WINDOW = ("2026-03-01T00:00:00Z", "2026-03-22T00:00:00Z")


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _expand_all(store: InMemorySeriesStore, window=WINDOW):
    """Expand every live series of USER the way a caller would."""
    expander = RecurrenceExpander()
    items = store.list_series(USER)
    exceptions = [exc for item in items for exc in store.get_exceptions(item.id)]
    return expander.expand_many(items, window[0], window[1], exceptions)


def _add_exception(store, series, instant, **overrides) -> ExceptionOverride:
    exception = ExceptionOverride(
        series_id=series.id,
        user_id=series.user_id,
        occurrence_instant=instant,
        overrides=type(series).CHANGES_MODEL(**overrides),
    )
    store.apply([InsertException(exception)])
    return exception


# Non-recurring targets


def test_update_non_recurring_record_directly(store, coordinator):
    single = EventSeries(user_id=USER, title="Once", start_at=_utc(2026, 3, 3, 9), end_at=_utc(2026, 3, 3, 10))
    store.apply([InsertSeries(single)])

    result = coordinator.update(USER, single.id, {"title": "Renamed"}, scope="instance")

    assert result.kind is MutationKind.UPDATE
    assert result.scope is None
    assert result.target.title == "Renamed"
    assert store.get_series(single.id).title == "Renamed"


def test_delete_non_recurring_record_directly(store, coordinator):
    single = EventSeries(user_id=USER, title="Once", start_at=_utc(2026, 3, 3, 9), end_at=_utc(2026, 3, 3, 10))
    store.apply([InsertSeries(single)])

    result = coordinator.delete(USER, single.id)

    assert result.scope is None
    assert store.get_series(single.id).is_deleted


def test_non_recurring_update_can_add_a_rule(store, coordinator):
    single = EventSeries(user_id=USER, title="Once", start_at=_utc(2026, 3, 3, 9), end_at=_utc(2026, 3, 3, 10))
    store.apply([InsertSeries(single)])

    result = coordinator.update(USER, single.id, {"rrule": "freq=weekly;byday=tu"})

    assert result.target.rrule == "FREQ=WEEKLY;BYDAY=TU"
    assert len(_expand_all(store)) == 3


# Series without scope / scope all


def test_update_series_without_scope_edits_whole_series(store, coordinator, stored_event):
    result = coordinator.update(USER, stored_event.id, {"title": "Daily sync"})

    assert result.scope is EditScope.ALL
    assert {inst.item.title for inst in _expand_all(store)} == {"Daily sync"}


def test_update_all_with_new_rule(store, coordinator, stored_event):
    result = coordinator.mutate("update", USER, stored_event.id, EventChanges(rrule="FREQ=DAILY;COUNT=3"), scope="all")

    assert result.target.rrule == "FREQ=DAILY;COUNT=3"
    assert len(_expand_all(store)) == 3


def test_update_all_can_stop_recurrence(store, coordinator, stored_event):
    coordinator.update(USER, stored_event.id, {"rrule": None}, scope=EditScope.ALL)

    record = store.get_series(stored_event.id)
    assert record.rrule is None
    assert len(_expand_all(store)) == 1


def test_delete_series_without_scope_keeps_exceptions(store, coordinator, stored_event):
    exception = _add_exception(store, stored_event, _utc(2026, 3, 9, 10), title="Special")

    result = coordinator.delete(USER, stored_event.id)

    assert result.scope is EditScope.ALL
    assert store.get_series(stored_event.id).is_deleted
    assert [e.id for e in store.get_exceptions(stored_event.id)] == [exception.id]
    assert _expand_all(store) == []


def test_delete_all_tombstones_series_and_exceptions(store, coordinator, stored_event):
    first = _add_exception(store, stored_event, _utc(2026, 3, 9, 10), title="Special")
    second = _add_exception(store, stored_event, _utc(2026, 3, 16, 10), title="Other")

    result = coordinator.delete(USER, stored_event.id, scope="all")

    assert store.get_series(stored_event.id).is_deleted
    assert store.get_exceptions(stored_event.id) == []
    assert sorted(result.tombstoned_exception_ids) == sorted([first.id, second.id])


# Scope instance


def test_instance_update_creates_exception(store, coordinator, stored_event):
    result = coordinator.update(
        USER, stored_event.id, {"title": "Special"}, scope="instance", instance_date="2026-03-09T10:00:00Z"
    )

    assert result.scope is EditScope.INSTANCE
    assert result.exception.occurrence_instant == _utc(2026, 3, 9, 10)
    assert result.exception.overrides.changes() == {"title": "Special"}
    assert result.tombstoned_exception_ids == []

    instances = _expand_all(store)
    assert [inst.item.title for inst in instances] == ["Standup", "Special", "Standup"]
    assert store.get_series(stored_event.id).title == "Standup"


def test_second_instance_update_replaces_first(store, coordinator, stored_event):
    first = coordinator.update(USER, stored_event.id, {"title": "One"}, "instance", _utc(2026, 3, 9, 10))
    second = coordinator.update(USER, stored_event.id, {"location": "Room 2"}, "instance", _utc(2026, 3, 9, 10))

    assert second.tombstoned_exception_ids == [first.exception.id]
    live = store.get_exceptions(stored_event.id)
    assert [e.id for e in live] == [second.exception.id]

    moved = _expand_all(store)[1].item
    assert moved.location == "Room 2"
    assert moved.title == "Standup"


def test_instance_update_moving_time(store, coordinator, stored_event):
    coordinator.update(
        USER, stored_event.id, {"start_at": "2026-03-10T15:00:00Z"}, "instance", "2026-03-09T10:00:00Z"
    )

    instances = _expand_all(store)
    assert [inst.start_at for inst in instances] == [
        _utc(2026, 3, 2, 10),
        _utc(2026, 3, 10, 15),
        _utc(2026, 3, 16, 10),
    ]
    assert instances[1].end_at == _utc(2026, 3, 10, 16)


def test_instance_update_drops_rule_from_overrides(store, coordinator, stored_event):
    result = coordinator.update(
        USER, stored_event.id, {"title": "X", "rrule": "FREQ=DAILY"}, "instance", _utc(2026, 3, 9, 10)
    )

    assert result.exception.overrides.changes() == {"title": "X"}
    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO"


def test_instance_update_with_only_a_rule_is_rejected(store, coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, {"rrule": "FREQ=DAILY"}, "instance", _utc(2026, 3, 9, 10))


def test_instance_update_rejects_inverted_bounds(store, coordinator, stored_event):
    payload = {"start_at": "2026-03-09T12:00:00Z", "end_at": "2026-03-09T11:00:00Z"}
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, payload, "instance", _utc(2026, 3, 9, 10))
    assert store.get_exceptions(stored_event.id) == []


def test_instance_delete_adds_ex_date_and_tombstones_exception(store, coordinator, stored_event):
    exception = _add_exception(store, stored_event, _utc(2026, 3, 9, 10), title="Special")

    result = coordinator.delete(USER, stored_event.id, "instance", "2026-03-09T10:00:00Z")

    assert result.scope is EditScope.INSTANCE
    assert result.tombstoned_exception_ids == [exception.id]
    assert store.get_series(stored_event.id).ex_dates == [_utc(2026, 3, 9, 10)]
    assert store.get_exceptions(stored_event.id) == []
    assert [inst.start_at for inst in _expand_all(store)] == [_utc(2026, 3, 2, 10), _utc(2026, 3, 16, 10)]


def test_instance_delete_keeps_ex_dates_sorted_and_unique(store, coordinator, stored_event):
    coordinator.delete(USER, stored_event.id, "instance", _utc(2026, 3, 16, 10))
    coordinator.delete(USER, stored_event.id, "instance", _utc(2026, 3, 2, 10))
    coordinator.delete(USER, stored_event.id, "instance", _utc(2026, 3, 16, 10))

    assert store.get_series(stored_event.id).ex_dates == [_utc(2026, 3, 2, 10), _utc(2026, 3, 16, 10)]


@pytest.mark.parametrize("scope", ["instance", "following"])
@pytest.mark.parametrize("kind", ["update", "delete"])
def test_missing_instance_date_is_a_validation_error(store, coordinator, stored_event, scope, kind):
    payload = {"title": "x"} if kind == "update" else None

    with pytest.raises(MissingInstanceDateError) as exc_info:
        coordinator.mutate(kind, USER, stored_event.id, payload, scope=scope)

    assert exc_info.value.code == "VALIDATION_ERROR"
    assert exc_info.value.status == 400


def test_unparseable_instance_date(store, coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.delete(USER, stored_event.id, "instance", "next monday")


def test_sub_second_series_edits_match_displayed_start(store, coordinator):
    series = EventSeries.model_validate(
        {
            "user_id": USER,
            "title": "Standup",
            "start_at": "2026-03-02T10:00:00.500Z",
            "end_at": "2026-03-02T11:00:00.500Z",
            "rrule": "FREQ=WEEKLY;BYDAY=MO",
        }
    )
    store.apply([InsertSeries(series)])

    coordinator.update(USER, series.id, {"title": "Special"}, "instance", "2026-03-09T10:00:00.500Z")
    coordinator.delete(USER, series.id, "instance", "2026-03-16T10:00:00.500Z")

    instances = _expand_all(store)
    assert [(inst.start_at, inst.item.title) for inst in instances] == [
        (_utc(2026, 3, 2, 10), "Standup"),
        (_utc(2026, 3, 9, 10), "Special"),
    ]


# Scope following


def test_following_update_splits_series(store, coordinator, stored_event):
    result = coordinator.update(
        USER, stored_event.id, {"title": "New Name"}, scope="following", instance_date="2026-03-09T10:00:00Z"
    )

    parent = store.get_series(stored_event.id)
    tail = result.created_series
    assert result.scope is EditScope.FOLLOWING
    assert parent.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260309T095959Z"
    assert parent.title == "Standup"
    assert tail.id != parent.id
    assert tail.title == "New Name"
    assert tail.rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert tail.bounds() == (_utc(2026, 3, 9, 10), _utc(2026, 3, 9, 11))
    assert store.get_series(tail.id) == tail

    instances = _expand_all(store)
    assert [(inst.start_at, inst.item.title, inst.series_id) for inst in instances] == [
        (_utc(2026, 3, 2, 10), "Standup", parent.id),
        (_utc(2026, 3, 9, 10), "New Name", tail.id),
        (_utc(2026, 3, 16, 10), "New Name", tail.id),
    ]


def test_following_update_with_new_start(store, coordinator, stored_event):
    result = coordinator.update(
        USER,
        stored_event.id,
        {"start_at": "2026-03-09T14:00:00Z"},
        scope="following",
        instance_date="2026-03-09T10:00:00Z",
    )

    assert result.created_series.bounds() == (_utc(2026, 3, 9, 14), _utc(2026, 3, 9, 15))
    assert [inst.start_at for inst in _expand_all(store)] == [
        _utc(2026, 3, 2, 10),
        _utc(2026, 3, 9, 14),
        _utc(2026, 3, 16, 14),
    ]


def test_following_update_carries_remaining_count(store, coordinator, stored_event):
    coordinator.update(USER, stored_event.id, {"rrule": "FREQ=WEEKLY;BYDAY=MO;COUNT=4"})

    result = coordinator.update(USER, stored_event.id, {"title": "Tail"}, "following", _utc(2026, 3, 16, 10))

    assert result.created_series.rrule == "FREQ=WEEKLY;BYDAY=MO;COUNT=2"
    instances = _expand_all(store, ("2026-03-01T00:00:00Z", "2026-06-01T00:00:00Z"))
    assert [inst.start_at.day for inst in instances] == [2, 9, 16, 23]
    assert [inst.item.title for inst in instances] == ["Standup", "Standup", "Tail", "Tail"]


def test_following_update_keeps_until_bound(store, coordinator, stored_event):
    coordinator.update(USER, stored_event.id, {"rrule": "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260331T000000Z"})

    result = coordinator.update(USER, stored_event.id, {"title": "Tail"}, "following", _utc(2026, 3, 16, 10))

    assert result.created_series.rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260331T000000Z"
    instances = _expand_all(store, ("2026-03-01T00:00:00Z", "2026-06-01T00:00:00Z"))
    assert [inst.start_at.day for inst in instances] == [2, 9, 16, 23, 30]


def test_following_update_with_new_rule(store, coordinator, stored_event):
    result = coordinator.update(USER, stored_event.id, {"rrule": "FREQ=DAILY;COUNT=2"}, "following", _utc(2026, 3, 9, 10))

    assert result.created_series.rrule == "FREQ=DAILY;COUNT=2"
    assert [inst.start_at.day for inst in _expand_all(store)] == [2, 9, 10]


def test_following_update_can_end_recurrence(store, coordinator, stored_event):
    result = coordinator.update(USER, stored_event.id, {"rrule": None, "title": "Last one"}, "following", _utc(2026, 3, 9, 10))

    assert result.created_series.rrule is None
    assert not result.created_series.is_series
    assert [inst.item.title for inst in _expand_all(store)] == ["Standup", "Last one"]


def test_following_update_moves_ex_dates_and_tombstones_later_exceptions(store, coordinator, stored_event):
    coordinator.delete(USER, stored_event.id, "instance", _utc(2026, 3, 2, 10))
    coordinator.delete(USER, stored_event.id, "instance", _utc(2026, 3, 16, 10))
    early = _add_exception(store, stored_event, _utc(2026, 3, 9, 10), title="Early")
    late = _add_exception(store, stored_event, _utc(2026, 3, 23, 10), title="Late")

    result = coordinator.update(USER, stored_event.id, {"title": "Tail"}, "following", _utc(2026, 3, 9, 12))

    parent = store.get_series(stored_event.id)
    assert parent.ex_dates == [_utc(2026, 3, 2, 10)]
    assert result.created_series.ex_dates == [_utc(2026, 3, 16, 10)]
    assert result.tombstoned_exception_ids == [late.id]
    assert [e.id for e in store.get_exceptions(stored_event.id)] == [early.id]


def test_following_update_at_first_occurrence_updates_whole_series(store, coordinator, stored_event):
    result = coordinator.update(USER, stored_event.id, {"title": "Everything"}, "following", _utc(2026, 3, 2, 10))

    assert result.scope is EditScope.ALL
    assert result.created_series is None
    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert len(store.list_series(USER)) == 1


def test_split_past_last_occurrence_is_rejected(store, coordinator, stored_event):
    coordinator.update(USER, stored_event.id, {"rrule": "FREQ=WEEKLY;BYDAY=MO;COUNT=2"})

    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, {"title": "x"}, "following", _utc(2026, 3, 16, 10))
    with pytest.raises(MutationValidationError):
        coordinator.delete(USER, stored_event.id, "following", _utc(2026, 3, 16, 10))

    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO;COUNT=2"


def test_following_delete_caps_series(store, coordinator, stored_event):
    early = _add_exception(store, stored_event, _utc(2026, 3, 2, 10), title="Early")
    late = _add_exception(store, stored_event, _utc(2026, 3, 16, 10), title="Late")

    result = coordinator.delete(USER, stored_event.id, "following", "2026-03-09T10:00:00Z")

    assert result.scope is EditScope.FOLLOWING
    assert result.created_series is None
    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260309T095959Z"
    assert result.tombstoned_exception_ids == [late.id]
    assert [e.id for e in store.get_exceptions(stored_event.id)] == [early.id]
    assert [inst.item.title for inst in _expand_all(store)] == ["Early"]


def test_following_delete_at_first_occurrence_deletes_series(store, coordinator, stored_event):
    _add_exception(store, stored_event, _utc(2026, 3, 9, 10), title="Special")

    result = coordinator.delete(USER, stored_event.id, "following", _utc(2026, 3, 2, 10))

    assert result.scope is EditScope.ALL
    assert store.get_series(stored_event.id).is_deleted
    assert store.get_exceptions(stored_event.id) == []


# Validation and ownership


def test_unknown_target(coordinator):
    with pytest.raises(SeriesNotFoundError) as exc_info:
        coordinator.delete(USER, "missing")
    assert exc_info.value.code == "NOT_FOUND"


def test_foreign_target(coordinator, stored_event):
    with pytest.raises(SeriesNotFoundError):
        coordinator.update("user-2", stored_event.id, {"title": "mine now"})


def test_tombstoned_target(coordinator, stored_event):
    coordinator.delete(USER, stored_event.id)
    with pytest.raises(SeriesNotFoundError):
        coordinator.delete(USER, stored_event.id)


def test_invalid_scope(coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, {"title": "x"}, scope="this-and-that")


def test_invalid_kind(coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.mutate("upsert", USER, stored_event.id, {"title": "x"})


@pytest.mark.parametrize("scope", [None, "all", "instance", "following"])
def test_invalid_rule_in_payload(store, coordinator, stored_event, scope):
    with pytest.raises(InvalidRuleError):
        coordinator.update(USER, stored_event.id, {"rrule": "FREQ=HOURLY"}, scope, _utc(2026, 3, 9, 10))
    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert len(store.list_series(USER)) == 1


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"titel": "typo"},
        {"title": None},
        {"start_at": "yesterday"},
        TaskChanges(title="wrong kind"),
    ],
)
def test_bad_payloads(coordinator, stored_event, payload):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, payload)


def test_series_update_rejects_end_before_start(store, coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, {"end_at": "2026-03-02T09:00:00Z"})
    assert store.get_series(stored_event.id).end_at == _utc(2026, 3, 2, 11)


def test_following_update_rejects_end_before_start(store, coordinator, stored_event):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_event.id, {"end_at": "2026-03-09T09:00:00Z"}, "following", _utc(2026, 3, 9, 10))
    assert store.get_series(stored_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO"


def test_failed_apply_leaves_parent_untouched(weekly_event):
    """A split whose insert fails must not leave the parent capped."""

    class FailingInsertStore(InMemorySeriesStore):
        def apply(self, ops):
            if any(isinstance(op, InsertSeries) for op in ops):
                ops = list(ops) + [object()]
            return super().apply(ops)

    store = FailingInsertStore()
    InMemorySeriesStore.apply(store, [InsertSeries(weekly_event)])
    coordinator = ScopedMutationCoordinator(store)

    with pytest.raises(PersistenceError):
        coordinator.update(USER, weekly_event.id, {"title": "Tail"}, "following", _utc(2026, 3, 9, 10))

    assert store.get_series(weekly_event.id).rrule == "FREQ=WEEKLY;BYDAY=MO"
    assert len(store.list_series(USER)) == 1


def test_concurrent_instance_edits_leave_one_live_exception(store, coordinator, stored_event):
    errors = []

    def edit(n):
        try:
            coordinator.update(USER, stored_event.id, {"title": f"Edit {n}"}, "instance", _utc(2026, 3, 9, 10))
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=edit, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(store.get_exceptions(stored_event.id)) == 1


def test_mutations_are_logged(coordinator, stored_event, caplog):
    with caplog.at_level(logging.INFO, logger="calley_recurrence"):
        coordinator.update(USER, stored_event.id, {"title": "New"}, "following", _utc(2026, 3, 9, 10))

    assert "series split" in caplog.text
    assert stored_event.id in caplog.text


# Tasks


def test_task_instance_update(store, coordinator, stored_task):
    coordinator.update(USER, stored_task.id, {"due_at": "2026-03-10T17:00:00Z"}, "instance", _utc(2026, 3, 9, 9))

    assert [inst.item.due_at for inst in _expand_all(store)] == [
        _utc(2026, 3, 2, 9),
        _utc(2026, 3, 10, 17),
        _utc(2026, 3, 16, 9),
    ]


def test_task_instance_cannot_clear_due_date(coordinator, stored_task):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_task.id, {"due_at": None}, "instance", _utc(2026, 3, 9, 9))


def test_task_following_split(store, coordinator, stored_task):
    result = coordinator.update(USER, stored_task.id, {"priority": "high"}, "following", "2026-03-09T09:00:00Z")

    assert isinstance(result.created_series, TaskSeries)
    assert result.created_series.due_at == _utc(2026, 3, 9, 9)
    assert result.created_series.priority == "high"
    assert store.get_series(stored_task.id).rrule == "FREQ=WEEKLY;BYDAY=MO;UNTIL=20260309T085959Z"
    assert [inst.item.priority for inst in _expand_all(store)] == ["medium", "high", "high"]


def test_task_instance_delete(store, coordinator, stored_task):
    coordinator.delete(USER, stored_task.id, "instance", _utc(2026, 3, 9, 9))
    assert [inst.item.due_at.day for inst in _expand_all(store)] == [2, 16]


def test_recurring_task_needs_due_date(coordinator, stored_task):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_task.id, {"due_at": None}, "all")


def test_standalone_task_due_date_can_be_cleared(store, coordinator):
    task = TaskSeries(user_id=USER, title="Once", due_at=_utc(2026, 3, 3, 9))
    store.apply([InsertSeries(task)])

    result = coordinator.update(USER, task.id, TaskChanges(due_at=None))

    assert result.target.due_at is None


def test_event_changes_rejected_for_task(coordinator, stored_task):
    with pytest.raises(MutationValidationError):
        coordinator.update(USER, stored_task.id, EventChanges(title="x"))


def test_task_delete_all(store, coordinator, stored_task):
    coordinator.update(USER, stored_task.id, {"status": "done"}, "instance", _utc(2026, 3, 9, 9))

    coordinator.delete(USER, stored_task.id, EditScope.ALL)

    assert store.get_series(stored_task.id).is_deleted
    assert store.get_exceptions(stored_task.id) == []
