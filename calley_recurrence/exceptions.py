"""Custom exception hierarchy for the recurrence engine.

Client input errors (bad rules, missing instance dates) and persistence
boundary errors share one base class so the calling HTTP layer can map
them to responses in a single place.
"""

from __future__ import annotations

from typing import Any


class RecurrenceEngineError(Exception):
    """Base exception for all recurrence engine errors.

    Subclasses set ``code`` (stable machine-readable identifier) and
    ``status`` (HTTP-equivalent status for the calling layer).
    """

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a response body fragment."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class InvalidRuleError(RecurrenceEngineError):
    """Recurrence rule is malformed or unsupported.

    Raised when:
    - FREQ is missing
    - FREQ is outside DAILY/WEEKLY/MONTHLY/YEARLY
    - The rule-iteration library rejects the string

    Never retried, never silently corrected.
    """

    code = "INVALID_RRULE"
    status = 422


class MutationValidationError(RecurrenceEngineError):
    """Mutation request is invalid (unknown scope, end before start, ...)."""

    code = "VALIDATION_ERROR"
    status = 400


class MissingInstanceDateError(MutationValidationError):
    """Scope ``instance`` or ``following`` was requested without an instance date."""


class SeriesNotFoundError(RecurrenceEngineError):
    """Series (or exception record) does not exist, is tombstoned, or belongs to another user."""

    code = "NOT_FOUND"
    status = 404


class ExceptionConflictError(RecurrenceEngineError):
    """A live exception already exists for the (series, occurrence instant) key."""

    code = "CONFLICT"
    status = 409


class PersistenceError(RecurrenceEngineError):
    """Atomic apply failed and nothing was committed."""

    code = "PERSISTENCE_ERROR"
    status = 500
