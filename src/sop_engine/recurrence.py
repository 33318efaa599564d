"""Recurrence expansion utilities with logging and safeguards.

Features:
 - daily / weekly / monthly rules (monthly anchors clamp to short months)
 - Optional holiday skipping through a pluggable holiday calendar
 - Idempotent over overlapping windows: dates already holding an occurrence for
   the same assignee are never emitted again
"""

from __future__ import annotations

import calendar
import logging
from datetime import date, timedelta
from typing import Callable, Iterable, List, Optional, Protocol, Set, Tuple

from .errors import DuplicateOccurrence, ProcedureNotSchedulable
from .models import (
    Completion,
    CompletionStatus,
    Frequency,
    Occurrence,
    Procedure,
    ProcedureStatus,
    RecurrenceRule,
)

logger = logging.getLogger(__name__)

DEFAULT_TIME = "00:00"

# Existing completions in these states occupy their (date, assignee) slot
BLOCKING_STATUSES = frozenset(
    {
        CompletionStatus.SCHEDULED,
        CompletionStatus.IN_PROGRESS,
        CompletionStatus.COMPLETED,
        CompletionStatus.SKIPPED,
        CompletionStatus.FAILED,
    }
)


class HolidayCalendar(Protocol):
    def is_holiday(self, day: date, context_id: str) -> bool:
        ...


class NoHolidays:
    def is_holiday(self, day: date, context_id: str) -> bool:
        return False


class StaticHolidays:
    """Holiday calendar backed by a fixed set of dates (shared by all contexts)."""

    def __init__(self, days: Iterable[date]):
        self.days = set(days)

    def is_holiday(self, day: date, context_id: str) -> bool:
        return day in self.days


def sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def monthly_day(anchor: date, year: int, month: int) -> int:
    last = calendar.monthrange(year, month)[1]
    return min(anchor.day, last)


def iter_days(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def matches_rule(rule: RecurrenceRule, day: date, anchor: date) -> bool:
    if rule.frequency == Frequency.DAILY:
        return True
    if rule.frequency == Frequency.WEEKLY:
        days = set(rule.days_of_week) or {sunday_based_weekday(anchor)}
        return sunday_based_weekday(day) in days
    if rule.frequency == Frequency.MONTHLY:
        return day.day == monthly_day(anchor, day.year, day.month)
    return False


def average_start_time(completions: Iterable[Completion]) -> Optional[str]:
    """Mean time-of-day ("HH:MM") of the recorded start times, or None."""
    minutes = [
        c.started_at.hour * 60 + c.started_at.minute
        for c in completions
        if c.started_at is not None
    ]
    if not minutes:
        return None
    mean = round(sum(minutes) / len(minutes))
    return f"{mean // 60:02d}:{mean % 60:02d}"


def _anchor_for(procedure: Procedure) -> date:
    rule = procedure.recurrence
    if rule and rule.anchor_date:
        return rule.anchor_date
    if procedure.created_at:
        return procedure.created_at.date()
    return date.today()


def expand_recurrence(
    procedure: Procedure,
    start: date,
    end: date,
    existing: Iterable[Completion] = (),
    is_holiday: Optional[Callable[[date, str], bool]] = None,
    default_time: Optional[str] = None,
) -> List[Occurrence]:
    """Candidate occurrences of a recurring procedure within [start, end]."""
    rule = procedure.recurrence
    if not procedure.is_recurring or rule is None:
        logger.debug("Procedure %s is not recurring; nothing to expand", procedure.id)
        return []
    if end < start:
        logger.debug("Empty window %s..%s for procedure %s", start, end, procedure.id)
        return []
    assignee = procedure.default_assignee
    taken: Set[Tuple[date, Optional[str]]] = {
        (c.scheduled_date, c.assigned_to)
        for c in existing
        if c.procedure_id == procedure.id and c.status in BLOCKING_STATUSES
    }
    time_of_day = rule.time_of_day or default_time or DEFAULT_TIME
    anchor = _anchor_for(procedure)
    results: List[Occurrence] = []
    seen: Set[date] = set()
    for day in iter_days(start, end):
        if not matches_rule(rule, day, anchor):
            continue
        if rule.skip_holidays and is_holiday and is_holiday(day, procedure.context_id):
            logger.debug("Skipping %s for procedure %s: holiday", day, procedure.id)
            continue
        if (day, assignee) in taken or day in seen:
            continue
        seen.add(day)
        results.append(Occurrence(procedure.id, day, time_of_day, assignee))
    logger.debug(
        "Expanded %d occurrences for procedure %s over %s..%s",
        len(results),
        procedure.id,
        start,
        end,
    )
    return results


class RecurrenceScheduler:
    """Materializes recurrence candidates as scheduled completions in the store."""

    def __init__(self, store, tracker, holidays: Optional[HolidayCalendar] = None):
        self.store = store
        self.tracker = tracker
        self.holidays = holidays or NoHolidays()

    def preview(self, procedure_id: str, start: date, end: date) -> List[Occurrence]:
        procedure = self.store.get_procedure(procedure_id)
        existing = self.store.list_completions(procedure_id=procedure_id)
        return expand_recurrence(
            procedure,
            start,
            end,
            existing=existing,
            is_holiday=self.holidays.is_holiday,
            default_time=average_start_time(existing),
        )

    def schedule(self, procedure_id: str, start: date, end: date) -> List[Completion]:
        procedure = self.store.get_procedure(procedure_id)
        if procedure.status == ProcedureStatus.ARCHIVED:
            raise ProcedureNotSchedulable(procedure_id, "procedure is archived")
        if not procedure.is_recurring or procedure.recurrence is None:
            raise ProcedureNotSchedulable(procedure_id, "procedure is not recurring")
        created: List[Completion] = []
        for occ in self.preview(procedure_id, start, end):
            try:
                created.append(
                    self.tracker.create_occurrence(
                        procedure_id,
                        occ.date,
                        scheduled_time=occ.time,
                        assigned_to=occ.assigned_to,
                    )
                )
            except DuplicateOccurrence:
                # Another run created this slot between preview and insert
                logger.info(
                    "Occurrence for procedure %s on %s already exists; skipped",
                    procedure_id,
                    occ.date,
                )
        logger.info(
            "Scheduled %d occurrences for procedure %s (%s..%s)",
            len(created),
            procedure_id,
            start,
            end,
        )
        return created
