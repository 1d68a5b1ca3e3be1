"""Recurrence rule evaluation backed by croniter."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from croniter import CroniterBadDateError, croniter

from ..errors import InvalidSchedule


class RecurrenceEvaluator(Protocol):
    """Produces successive occurrences of a recurrence rule."""

    def next(self, after: datetime) -> Optional[datetime]:  # pragma: no cover - protocol signature
        ...


EvaluatorFactory = Callable[[str, datetime], RecurrenceEvaluator]


class CronEvaluator(RecurrenceEvaluator):
    """Cron rule evaluator; a sixth field, when present, is seconds.

    Fields are matched against wall-clock time in the zone of *start*, so a
    start instant carrying a local zone makes "0 8 * * *" mean 08:00 local.
    """

    def __init__(self, rule: str, start: datetime) -> None:
        self._rule = rule
        self._start = _aware(start)
        self._zone = self._start.tzinfo
        self._iter = croniter(rule, self._start)

    @property
    def rule(self) -> str:
        return self._rule

    def next(self, after: datetime) -> Optional[datetime]:
        """Return the first occurrence strictly after *after*, or None when exhausted."""

        reference = max(_aware(after), self._start).astimezone(self._zone)
        self._iter.set_current(reference, force=True)
        try:
            return self._iter.get_next(datetime)
        except CroniterBadDateError:
            return None


def parse_rule(rule: str, start: datetime) -> CronEvaluator:
    """Parse *rule* into an evaluator seeded at *start*."""

    candidate = (rule or "").strip()
    if not candidate:
        raise InvalidSchedule(rule or "", "empty rule")
    try:
        return CronEvaluator(candidate, start)
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidSchedule(candidate, str(exc)) from exc


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
