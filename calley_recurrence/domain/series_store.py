"""Persistence contract and in-process reference store for recurring records.

The real persistence layer is an external collaborator; `SeriesRepository`
states what the engine needs from it and `InMemorySeriesStore` implements
it with all-or-nothing `apply()` semantics.
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, Union

from ..calendar.models import ExceptionOverride, RecurringItem
from ..core.timezone_utils import now_utc
from ..exceptions import ExceptionConflictError, PersistenceError, SeriesNotFoundError

logger = logging.getLogger(__name__)


# Operation records


@dataclass(frozen=True)
class UpdateSeries:
    """Set fields on an existing live record."""

    series_id: str
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InsertSeries:
    """Insert a new record."""

    record: RecurringItem


@dataclass(frozen=True)
class TombstoneSeries:
    """Soft-delete a live record."""

    series_id: str


@dataclass(frozen=True)
class InsertException:
    """Insert a new exception; the (series, instant) key must not be live."""

    record: ExceptionOverride


@dataclass(frozen=True)
class TombstoneException:
    """Soft-delete a live exception."""

    exception_id: str


StoreOp = Union[UpdateSeries, InsertSeries, TombstoneSeries, InsertException, TombstoneException]


@dataclass
class ApplyResult:
    """Records written by a committed `apply()` call."""

    series: list[RecurringItem] = field(default_factory=list)
    exceptions: list[ExceptionOverride] = field(default_factory=list)

    def series_by_id(self, series_id: str) -> Optional[RecurringItem]:
        for record in reversed(self.series):
            if record.id == series_id:
                return record
        return None


class SeriesRepository(Protocol):
    """What the engine needs from the persistence layer."""

    def get_series(self, series_id: str) -> Optional[RecurringItem]: ...

    def list_series(self, user_id: str) -> list[RecurringItem]: ...

    def get_exceptions(
        self,
        series_id: str,
        instants: Optional[Iterable[datetime]] = None,
    ) -> list[ExceptionOverride]: ...

    def apply(self, ops: Sequence[StoreOp]) -> ApplyResult: ...


class InMemorySeriesStore:
    """Thread-safe in-memory implementation of `SeriesRepository`.

    `apply()` stages every op against copies of the affected tables and
    publishes them only when all ops succeed, so a failed op leaves nothing
    behind. Tombstoned records are kept (``deleted_at`` set).
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._series: dict[str, RecurringItem] = {}
        self._exceptions: dict[str, ExceptionOverride] = {}

    # Reads

    def get_series(self, series_id: str) -> Optional[RecurringItem]:
        """Get a record by id (tombstoned records included)."""
        with self._lock:
            return self._series.get(series_id)

    def list_series(self, user_id: str) -> list[RecurringItem]:
        """All live records owned by ``user_id``."""
        with self._lock:
            return [
                record
                for record in self._series.values()
                if record.user_id == user_id and not record.is_deleted
            ]

    def get_exceptions(
        self,
        series_id: str,
        instants: Optional[Iterable[datetime]] = None,
    ) -> list[ExceptionOverride]:
        """Live exceptions of ``series_id``, optionally limited to ``instants``."""
        wanted = set(instants) if instants is not None else None
        with self._lock:
            found = [
                exc
                for exc in self._exceptions.values()
                if exc.series_id == series_id
                and exc.is_live
                and (wanted is None or exc.occurrence_instant in wanted)
            ]
        found.sort(key=lambda exc: exc.occurrence_instant)
        return found

    def get_exception(self, exception_id: str) -> Optional[ExceptionOverride]:
        with self._lock:
            return self._exceptions.get(exception_id)

    # Writes

    def apply(self, ops: Sequence[StoreOp]) -> ApplyResult:
        """Apply ``ops`` atomically.

        Raises:
            SeriesNotFoundError: An update/tombstone targets a missing or dead record
            ExceptionConflictError: An insert would create a second live exception for a key
            PersistenceError: An op is malformed or the insert id is already taken
        """
        with self._lock:
            staged_series = dict(self._series)
            staged_exceptions = dict(self._exceptions)
            result = ApplyResult()
            now = now_utc()

            for op in ops:
                if isinstance(op, UpdateSeries):
                    current = self._live_series(staged_series, op.series_id)
                    changes = dict(op.changes)
                    changes.setdefault("updated_at", now)
                    updated = current.model_copy(update=copy.deepcopy(changes))
                    staged_series[op.series_id] = updated
                    result.series.append(updated)
                elif isinstance(op, InsertSeries):
                    if op.record.id in staged_series:
                        raise PersistenceError("Record id already exists", series_id=op.record.id)
                    staged_series[op.record.id] = op.record
                    result.series.append(op.record)
                elif isinstance(op, TombstoneSeries):
                    current = self._live_series(staged_series, op.series_id)
                    tombstoned = current.model_copy(update={"deleted_at": now, "updated_at": now})
                    staged_series[op.series_id] = tombstoned
                    result.series.append(tombstoned)
                elif isinstance(op, InsertException):
                    record = op.record
                    if record.id in staged_exceptions:
                        raise PersistenceError("Exception id already exists", exception_id=record.id)
                    for existing in staged_exceptions.values():
                        if existing.is_live and existing.key == record.key:
                            raise ExceptionConflictError(
                                "A live exception already exists for this occurrence",
                                series_id=record.series_id,
                                exception_id=existing.id,
                            )
                    staged_exceptions[record.id] = record
                    result.exceptions.append(record)
                elif isinstance(op, TombstoneException):
                    current_exc = staged_exceptions.get(op.exception_id)
                    if current_exc is None or not current_exc.is_live:
                        raise SeriesNotFoundError(
                            "Exception not found", exception_id=op.exception_id
                        )
                    tombstoned_exc = current_exc.model_copy(
                        update={"deleted_at": now, "updated_at": now}
                    )
                    staged_exceptions[op.exception_id] = tombstoned_exc
                    result.exceptions.append(tombstoned_exc)
                else:
                    raise PersistenceError(f"Unsupported store operation: {op!r}")

            self._series = staged_series
            self._exceptions = staged_exceptions

        logger.debug(
            "Committed %d ops (%d series writes, %d exception writes)",
            len(ops),
            len(result.series),
            len(result.exceptions),
        )
        return result

    @staticmethod
    def _live_series(table: dict[str, RecurringItem], series_id: str) -> RecurringItem:
        current = table.get(series_id)
        if current is None or current.is_deleted:
            raise SeriesNotFoundError("Series not found", series_id=series_id)
        return current


class SeriesLockRegistry:
    """Per-series-id locks serializing read-modify-write transitions.

    Entries are reference-counted and dropped once no caller holds or waits
    on them, so the registry only ever holds locks of series being mutated.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, series_id: str) -> Iterator[None]:
        """Hold the lock for ``series_id`` for the duration of the block."""
        with self._guard:
            lock = self._locks.setdefault(series_id, threading.Lock())
            self._holders[series_id] = self._holders.get(series_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                remaining = self._holders[series_id] - 1
                if remaining:
                    self._holders[series_id] = remaining
                else:
                    del self._holders[series_id]
                    del self._locks[series_id]
