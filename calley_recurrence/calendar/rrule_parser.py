"""RRULE parsing, validation and iteration for calley_recurrence.

Rules are held as a structured `RecurrenceRule` (an ordered mapping of
RFC-5545 rule parts) so that bounds can be rewritten programmatically; the
actual occurrence arithmetic is delegated to ``dateutil.rrule``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Optional, Union

from dateutil.rrule import rruleset, rrulestr

from ..core.config_loader import EngineConfig
from ..core.timezone_utils import UTC, format_rrule_utc, truncate_instant
from ..exceptions import InvalidRuleError

logger = logging.getLogger(__name__)

# Aware anchor used when a rule is checked without a real series start.
_VALIDATION_ANCHOR = datetime(2000, 1, 3, 9, 0, tzinfo=UTC)

_UNTIL_FORMATS = (
    ("%Y%m%dT%H%M%SZ", False),
    ("%Y%m%dT%H%M%S", False),
    ("%Y%m%d", True),
)


def _normalize_until(value: str) -> str:
    """Normalize an UNTIL value to a UTC DATE-TIME string.

    Floating date-times are read as UTC; a DATE value becomes the last second
    of that day so the whole day stays inside the series.
    """
    raw = value.strip().upper()
    for fmt, date_only in _UNTIL_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        if date_only:
            parsed = parsed + timedelta(days=1) - timedelta(seconds=1)
        return format_rrule_utc(parsed.replace(tzinfo=UTC))
    raise InvalidRuleError(f"Invalid recurrence rule: bad UNTIL value {value!r}")


class RecurrenceRule:
    """Structured, immutable view of an RRULE string.

    Parts keep their original order; keys are upper-cased. Mutating helpers
    return new instances.
    """

    __slots__ = ("_parts",)

    def __init__(self, parts: Iterable[tuple[str, str]]):
        self._parts: tuple[tuple[str, str], ...] = tuple(parts)

    @classmethod
    def parse(cls, text: str) -> RecurrenceRule:
        """Parse ``FREQ=...;...`` text (optionally prefixed with ``RRULE:``).

        Raises:
            InvalidRuleError: If the text is not a well-formed list of parts
        """
        if not isinstance(text, str):
            raise InvalidRuleError("Invalid recurrence rule: rule must be a string")
        return _parse_rule_text(text)

    @property
    def parts(self) -> dict[str, str]:
        return dict(self._parts)

    def get(self, key: str) -> Optional[str]:
        return self.parts.get(key.upper())

    @property
    def freq(self) -> Optional[str]:
        return self.get("FREQ")

    @property
    def until(self) -> Optional[datetime]:
        value = self.get("UNTIL")
        if value is None:
            return None
        return datetime.strptime(value, "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC)

    @property
    def count(self) -> Optional[int]:
        value = self.get("COUNT")
        return int(value) if value is not None else None

    @property
    def is_bounded(self) -> bool:
        return self.until is not None or self.count is not None

    def without_bounds(self) -> RecurrenceRule:
        """Copy of the rule with UNTIL and COUNT removed."""
        return RecurrenceRule((k, v) for k, v in self._parts if k not in ("UNTIL", "COUNT"))

    def with_until(self, instant: datetime) -> RecurrenceRule:
        """Copy of the rule ending at ``instant`` (any UNTIL/COUNT is replaced)."""
        parts = list(self.without_bounds()._parts)
        parts.append(("UNTIL", format_rrule_utc(instant)))
        return RecurrenceRule(parts)

    def with_count(self, count: int) -> RecurrenceRule:
        """Copy of the rule limited to ``count`` occurrences (any UNTIL/COUNT is replaced)."""
        if count < 1:
            raise ValueError("count must be positive")
        parts = list(self.without_bounds()._parts)
        parts.append(("COUNT", str(count)))
        return RecurrenceRule(parts)

    def to_string(self) -> str:
        return ";".join(f"{key}={value}" for key, value in self._parts)

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"RecurrenceRule({self.to_string()!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RecurrenceRule):
            return NotImplemented
        return self._parts == other._parts

    def __hash__(self) -> int:
        return hash(self._parts)


@lru_cache(maxsize=512)
def _parse_rule_text(text: str) -> RecurrenceRule:
    if not isinstance(text, str) or not text.strip():
        raise InvalidRuleError("Invalid recurrence rule: empty rule")

    body = text.strip()
    if body.upper().startswith("RRULE:"):
        body = body[len("RRULE:"):]
    if "\n" in body or "\r" in body:
        raise InvalidRuleError("Invalid recurrence rule: only a single RRULE line is supported")

    parts: list[tuple[str, str]] = []
    seen: set[str] = set()
    for segment in body.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise InvalidRuleError(f"Invalid recurrence rule: malformed part {segment!r}")
        key, value = segment.split("=", 1)
        key = key.strip().upper()
        value = value.strip()
        if not key or not value:
            raise InvalidRuleError(f"Invalid recurrence rule: malformed part {segment!r}")
        if key in seen:
            raise InvalidRuleError(f"Invalid recurrence rule: duplicate {key}")
        seen.add(key)

        if key == "UNTIL":
            value = _normalize_until(value)
        elif key in ("COUNT", "INTERVAL"):
            if not value.isdigit() or int(value) < 1:
                raise InvalidRuleError(f"Invalid recurrence rule: {key} must be a positive integer")
        else:
            value = value.upper()
        parts.append((key, value))

    if "UNTIL" in seen and "COUNT" in seen:
        raise InvalidRuleError("Invalid recurrence rule: UNTIL and COUNT are mutually exclusive")

    return RecurrenceRule(parts)


RuleLike = Union[str, RecurrenceRule]


class RuleParser:
    """Validates rule strings and builds occurrence iterators.

    Stateless apart from configuration: every `iterate()` call returns a
    fresh ``rruleset`` so concurrent iterations never interfere.
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def parse(self, rule: RuleLike) -> RecurrenceRule:
        """Parse and fully validate a rule.

        Raises:
            InvalidRuleError: missing/unsupported FREQ or library parse failure
        """
        parsed = rule if isinstance(rule, RecurrenceRule) else RecurrenceRule.parse(rule)

        freq = parsed.freq
        if freq is None:
            raise InvalidRuleError("Invalid recurrence rule: missing FREQ")
        if freq not in self.config.allowed_frequencies:
            raise InvalidRuleError(
                "Invalid recurrence rule: invalid FREQ value", freq=freq
            )

        try:
            rrulestr(parsed.to_string(), dtstart=_VALIDATION_ANCHOR)
        except (ValueError, TypeError, KeyError, IndexError, OverflowError) as e:
            logger.debug("dateutil rejected rule %r: %s", parsed.to_string(), e)
            raise InvalidRuleError("Invalid recurrence rule: failed to parse") from e

        return parsed

    def validate(self, rule: RuleLike) -> None:
        """Raise InvalidRuleError unless ``rule`` is acceptable."""
        self.parse(rule)

    def iterate(
        self,
        rule: RuleLike,
        dtstart: datetime,
        ex_dates: Iterable[datetime] = (),
    ) -> rruleset:
        """Build an occurrence set anchored at ``dtstart`` with ``ex_dates`` excluded.

        The returned set is lazy and restartable: iterate it, or call
        ``between()``/``xafter()`` on it as often as needed.
        """
        parsed = self.parse(rule)
        anchor = truncate_instant(dtstart)

        try:
            base_rule = rrulestr(parsed.to_string(), dtstart=anchor)
        except (ValueError, TypeError, KeyError, IndexError, OverflowError) as e:
            raise InvalidRuleError("Invalid recurrence rule: failed to parse") from e

        occurrences = rruleset()
        occurrences.rrule(base_rule)
        for ex_date in ex_dates:
            occurrences.exdate(truncate_instant(ex_date))
        return occurrences


_default_parser = RuleParser()


def validate_rule(text: str) -> None:
    """Validate ``text`` with the default configuration.

    Raises:
        InvalidRuleError: If the rule is malformed or unsupported
    """
    _default_parser.validate(text)
