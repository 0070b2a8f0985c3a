"""Data models for recurring events and tasks - calley_recurrence version."""

import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    SerializeAsAny,
    StringConstraints,
    field_serializer,
    model_validator,
)
from typing_extensions import Self

from ..core.timezone_utils import ensure_utc, now_utc, serialize_instant, truncate_instant

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
# Occurrence bounds and keys, held at whole-second precision
Instant = Annotated[datetime, AfterValidator(truncate_instant)]
Title = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
Description = Annotated[str, StringConstraints(max_length=2000)]

TaskPriority = Literal["none", "low", "medium", "high"]
TaskStatus = Literal["todo", "in_progress", "done"]


def new_id() -> str:
    """Generate a record identifier."""
    return uuid.uuid4().hex


class EditScope(str, Enum):
    """Blast radius of an edit or delete on a recurring item."""

    INSTANCE = "instance"
    FOLLOWING = "following"
    ALL = "all"


class MutationKind(str, Enum):
    """Mutation kinds accepted by the coordinator."""

    UPDATE = "update"
    DELETE = "delete"


# Change records


class SeriesChanges(BaseModel):
    """Sparse set of field changes.

    Presence is tracked through ``model_fields_set``: a field explicitly set
    to ``None`` clears the value, an absent field leaves it untouched.
    Unknown keys are rejected.
    """

    KIND: ClassVar[str] = "item"
    NON_NULLABLE: ClassVar[tuple[str, ...]] = ()

    rrule: Optional[str] = Field(default=None, max_length=500, description="Recurrence rule")

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _reject_null_required_fields(self) -> Self:
        for name in self.NON_NULLABLE:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self, include_rrule: bool = True) -> dict[str, Any]:
        """Return the explicitly set fields as a plain mapping."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if include_rrule or name != "rrule"
        }

    def without_rrule(self) -> Self:
        """Copy holding only the per-occurrence fields (``rrule`` dropped)."""
        return type(self).model_validate(self.changes(include_rrule=False))

    def is_set(self, name: str) -> bool:
        return name in self.model_fields_set

    @property
    def is_empty(self) -> bool:
        return not self.model_fields_set


class EventChanges(SeriesChanges):
    """Editable event fields."""

    KIND: ClassVar[str] = "event"
    NON_NULLABLE: ClassVar[tuple[str, ...]] = (
        "title",
        "start_at",
        "end_at",
        "is_all_day",
        "visibility",
    )

    title: Optional[Title] = None
    description: Optional[Description] = None
    location: Optional[str] = Field(default=None, max_length=200)
    start_at: Optional[Instant] = None
    end_at: Optional[Instant] = None
    is_all_day: Optional[bool] = None
    category_id: Optional[str] = None
    color: Optional[str] = None
    visibility: Optional[str] = None


class TaskChanges(SeriesChanges):
    """Editable task fields. ``due_at`` may be cleared on non-recurring tasks."""

    KIND: ClassVar[str] = "task"
    NON_NULLABLE: ClassVar[tuple[str, ...]] = ("title", "priority", "status")

    title: Optional[Title] = None
    description: Optional[Description] = None
    due_at: Optional[Instant] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    category_id: Optional[str] = None


CHANGES_BY_KIND: dict[str, type[SeriesChanges]] = {
    EventChanges.KIND: EventChanges,
    TaskChanges.KIND: TaskChanges,
}


# Recurring records


RECORD_FIELDS = frozenset(
    {
        "id",
        "user_id",
        "rrule",
        "ex_dates",
        "recurring_parent_id",
        "original_date",
        "created_at",
        "updated_at",
        "deleted_at",
    }
)


class RecurringItem(BaseModel):
    """Minimal recurrable capability set shared by events and tasks.

    Subclasses name the fields holding the occurrence bounds (START_FIELD,
    END_FIELD) and the change record used for edits (CHANGES_MODEL).
    """

    KIND: ClassVar[str] = "item"
    START_FIELD: ClassVar[str] = "start_at"
    END_FIELD: ClassVar[str] = "end_at"
    CHANGES_MODEL: ClassVar[type[SeriesChanges]] = SeriesChanges

    id: str = Field(default_factory=new_id, description="Record ID")
    user_id: str = Field(..., description="Owner")
    rrule: Optional[str] = Field(default=None, description="RRULE; non-null means recurring")
    ex_dates: list[Instant] = Field(
        default_factory=list, description="Excluded occurrence instants"
    )
    recurring_parent_id: Optional[str] = Field(
        default=None, description="Parent series of a materialized exception-instance record"
    )
    original_date: Optional[Instant] = Field(
        default=None, description="Occurrence instant replaced by an exception-instance record"
    )
    created_at: UtcDatetime = Field(default_factory=now_utc)
    updated_at: UtcDatetime = Field(default_factory=now_utc)
    deleted_at: Optional[UtcDatetime] = Field(default=None, description="Tombstone time")

    @property
    def is_series(self) -> bool:
        """True for a recurring parent (has a rule and is not itself an exception record)."""
        return self.rrule is not None and self.recurring_parent_id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def bounds(self) -> tuple[Optional[datetime], Optional[datetime]]:
        """Start and end of the nominal occurrence."""
        return getattr(self, self.START_FIELD), getattr(self, self.END_FIELD)

    def nominal_duration(self) -> Optional[timedelta]:
        start, end = self.bounds()
        if start is None or end is None:
            return None
        return end - start

    def with_bounds(self, start: Optional[datetime], end: Optional[datetime]) -> Self:
        """Copy with the occurrence bounds replaced."""
        if self.START_FIELD == self.END_FIELD:
            return self.model_copy(update={self.START_FIELD: start})
        return self.model_copy(update={self.START_FIELD: start, self.END_FIELD: end})

    def with_changes(self, changes: dict[str, Any]) -> Self:
        """Copy with already-validated field changes applied."""
        return self.model_copy(update=changes)

    def domain_fields(self) -> dict[str, Any]:
        """Fields inherited by every occurrence (everything but record bookkeeping)."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name not in RECORD_FIELDS
        }

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class EventSeries(RecurringItem):
    """Calendar event; ``start_at``/``end_at`` bound every occurrence."""

    KIND: ClassVar[str] = "event"
    CHANGES_MODEL: ClassVar[type[SeriesChanges]] = EventChanges

    category_id: Optional[str] = Field(default=None, description="Calendar category")
    title: Title = Field(..., description="Event title")
    description: Optional[Description] = Field(default=None)
    location: Optional[str] = Field(default=None, max_length=200)
    start_at: Instant = Field(..., description="Start of the first occurrence")
    end_at: Instant = Field(..., description="End of the first occurrence")
    is_all_day: bool = Field(default=False)
    color: Optional[str] = Field(default=None)
    visibility: str = Field(default="private")


class TaskSeries(RecurringItem):
    """Task; ``due_at`` is both start and end, so occurrences have zero duration."""

    KIND: ClassVar[str] = "task"
    START_FIELD: ClassVar[str] = "due_at"
    END_FIELD: ClassVar[str] = "due_at"
    CHANGES_MODEL: ClassVar[type[SeriesChanges]] = TaskChanges

    category_id: Optional[str] = Field(default=None, description="Calendar category")
    title: Title = Field(..., description="Task title")
    description: Optional[Description] = Field(default=None)
    due_at: Optional[Instant] = Field(default=None, description="Due instant")
    priority: TaskPriority = Field(default="none")
    status: TaskStatus = Field(default="todo")
    completed_at: Optional[UtcDatetime] = Field(default=None)
    sort_order: int = Field(default=0)


class ExceptionOverride(BaseModel):
    """Stored per-occurrence delta keyed by (series_id, occurrence_instant).

    ``series_kind`` selects the change record ``overrides`` is read into, so a
    dumped exception validates back to the same type. When a change record is
    passed in directly the kind is taken from it. Only the explicitly set
    override fields are serialized.
    """

    id: str = Field(default_factory=new_id)
    series_id: str = Field(..., description="Owning series")
    user_id: str = Field(..., description="Owner")
    series_kind: Literal["event", "task"] = Field(..., description="Kind of the owning series")
    occurrence_instant: Instant = Field(
        ..., description="Original, un-overridden instant this exception replaces"
    )
    overrides: Union[EventChanges, TaskChanges] = Field(..., description="Changed fields only")
    created_at: UtcDatetime = Field(default_factory=now_utc)
    updated_at: UtcDatetime = Field(default_factory=now_utc)
    deleted_at: Optional[UtcDatetime] = Field(default=None, description="Tombstone time")

    @model_validator(mode="before")
    @classmethod
    def _resolve_overrides(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        overrides = data.get("overrides")
        if isinstance(overrides, SeriesChanges):
            return {"series_kind": overrides.KIND, **data}
        kind = data.get("series_kind")
        model = CHANGES_BY_KIND.get(kind) if isinstance(kind, str) else None
        if model is not None and isinstance(overrides, Mapping):
            return {**data, "overrides": model.model_validate(dict(overrides))}
        return data

    @model_validator(mode="after")
    def _check_series_kind(self) -> Self:
        if self.overrides.KIND != self.series_kind:
            raise ValueError(
                f"{type(self.overrides).__name__} cannot override a {self.series_kind} series"
            )
        return self

    @field_serializer("overrides")
    def _serialize_overrides(self, overrides: SeriesChanges, info: SerializationInfo) -> dict[str, Any]:
        return overrides.model_dump(mode=info.mode, exclude_unset=True)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    @property
    def key(self) -> tuple[str, datetime]:
        return self.series_id, self.occurrence_instant


class ExpandedInstance(BaseModel):
    """One materialized occurrence; computed per request and never persisted.

    ``occurrence_instant`` is the pre-override start and the join key for
    later instance edits; it is ``None`` for non-recurring pass-through items.
    """

    item: SerializeAsAny[RecurringItem]
    occurrence_instant: Optional[Instant] = None
    exception_id: Optional[str] = None

    @property
    def series_id(self) -> str:
        return self.item.id

    @property
    def start_at(self) -> Optional[datetime]:
        return self.item.bounds()[0]

    @property
    def end_at(self) -> Optional[datetime]:
        return self.item.bounds()[1]

    @property
    def is_recurring_instance(self) -> bool:
        return self.occurrence_instant is not None

    def to_dict(self) -> dict[str, Any]:
        """Flatten into a response mapping (item fields plus instance keys)."""
        data = self.item.model_dump(mode="json")
        data["is_recurring_instance"] = self.is_recurring_instance
        data["occurrence_instant"] = (
            serialize_instant(self.occurrence_instant) if self.occurrence_instant else None
        )
        data["exception_id"] = self.exception_id
        return data


class AppliedResult(BaseModel):
    """Outcome of a scoped mutation."""

    kind: MutationKind
    scope: Optional[EditScope] = Field(
        default=None, description="Effective scope (None for non-recurring targets)"
    )
    target: SerializeAsAny[RecurringItem] = Field(..., description="Target record after the mutation")
    created_series: Optional[SerializeAsAny[RecurringItem]] = Field(
        default=None, description="New tail series of a following split"
    )
    exception: Optional[ExceptionOverride] = Field(
        default=None, description="Exception created by an instance edit"
    )
    tombstoned_exception_ids: list[str] = Field(default_factory=list)
