"""Read-only projections handed to the calendar and task collaborators."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from .composition import ResolvedProcedure
from .models import (
    CalendarItem,
    Category,
    Completion,
    CompletionStatus,
    Occurrence,
    Procedure,
    SchedulingConflict,
    SlotSuggestion,
    WorkItem,
)

CATEGORY_COLORS = {
    Category.MORNING: "#F59E0B",
    Category.EVENING: "#6366F1",
    Category.LEAVING: "#EF4444",
    Category.CLEANUP: "#10B981",
    Category.MEAL_PREP: "#F97316",
    Category.WORK: "#059669",
    Category.CUSTOM: "#8B5CF6",
}
FALLBACK_COLOR = "#6B7280"

# Window and granularity for alternative slot suggestions
SUGGESTION_START = "05:00"
SUGGESTION_END = "22:00"
SUGGESTION_STEP = 15
MAX_SUGGESTIONS = 3

# Occurrences in these states no longer hold their slot
RELEASED_STATUSES = frozenset({CompletionStatus.SKIPPED, CompletionStatus.FAILED})


def category_color(category: Category) -> str:
    return CATEGORY_COLORS.get(category, FALLBACK_COLOR)


def add_minutes(time_of_day: str, minutes: float) -> str:
    """Add minutes to an "HH:MM" time; wraps past midnight."""
    start = datetime.strptime(time_of_day, "%H:%M")
    return (start + timedelta(minutes=round(minutes))).strftime("%H:%M")


def calendar_item(completion: Completion, procedure: Procedure) -> CalendarItem:
    start = completion.scheduled_time or "00:00"
    return CalendarItem(
        id=f"sop-{completion.id}",
        procedure_id=procedure.id,
        procedure_name=procedure.name,
        category=procedure.category,
        estimated_duration=procedure.estimated_duration,
        date=completion.scheduled_date,
        start_time=start,
        end_time=add_minutes(start, procedure.estimated_duration),
        status=completion.status,
        color=category_color(procedure.category),
        is_draggable=completion.status == CompletionStatus.SCHEDULED,
        assigned_to=completion.assigned_to,
        completion_id=completion.id,
    )


def slot_item(occurrence: Occurrence, procedure: Procedure) -> CalendarItem:
    """Projection of a recurrence slot that has no completion yet."""
    return CalendarItem(
        id=f"slot-{procedure.id}-{occurrence.date.isoformat()}",
        procedure_id=procedure.id,
        procedure_name=procedure.name,
        category=procedure.category,
        estimated_duration=procedure.estimated_duration,
        date=occurrence.date,
        start_time=occurrence.time,
        end_time=add_minutes(occurrence.time, procedure.estimated_duration),
        status=CompletionStatus.SCHEDULED,
        color=category_color(procedure.category),
        is_draggable=False,
        assigned_to=occurrence.assigned_to,
    )


def to_work_item(
    resolved: ResolvedProcedure, assignee: Optional[str] = None
) -> WorkItem:
    procedure = resolved.procedure
    lines: List[str] = [
        f"Procedure: {procedure.name} ({procedure.id}, v{procedure.version})"
    ]
    if procedure.description:
        lines.append(procedure.description)
    lines.append("Steps:")
    for idx, step in enumerate(resolved.steps, start=1):
        indent = "  " * (step.depth + 1)
        optional = " (optional)" if step.step.is_optional else ""
        lines.append(f"{indent}{idx}. {step.title} [{step.duration:g} min]{optional}")
        for item in step.step.list_items:
            lines.append(f"{indent}   - {item.text}")
    return WorkItem(
        title=procedure.name,
        estimated_duration=resolved.total_duration,
        context="\n".join(lines),
        assignee=assignee or procedure.default_assignee,
        tags=["sop", procedure.category.value, *procedure.tags],
    )


def _minutes(time_of_day: str) -> int:
    hours, minutes = time_of_day.split(":")
    return int(hours) * 60 + int(minutes)


def time_slots(
    start: str = SUGGESTION_START, end: str = SUGGESTION_END, step: int = SUGGESTION_STEP
) -> List[str]:
    """Return "HH:MM" slots from start to end inclusive, every ``step`` minutes."""
    return [
        f"{m // 60:02d}:{m % 60:02d}"
        for m in range(_minutes(start), _minutes(end) + 1, step)
    ]


def _overlaps(start: int, duration: float, item: CalendarItem) -> bool:
    item_start = _minutes(item.start_time)
    item_end = item_start + item.estimated_duration
    return start < item_end and start + duration > item_start


def find_conflicts(
    items: Iterable[CalendarItem],
    day: date,
    start_time: str,
    duration: float,
    assignee: Optional[str] = None,
    exclude_completion_id: Optional[str] = None,
) -> Optional[SchedulingConflict]:
    """Check a requested slot against the day's calendar items.

    Items only clash when their assignees are compatible: two different
    named assignees never block each other. Returns None when the slot is
    free; otherwise the clashing items plus up to three free start times on
    the same day, or the same time on the next day when the day is full.
    """
    blocking = [
        item
        for item in items
        if item.date == day
        and item.completion_id != exclude_completion_id
        and item.status not in RELEASED_STATUSES
        and not (assignee and item.assigned_to and item.assigned_to != assignee)
    ]
    requested = _minutes(start_time)
    clashing = [item for item in blocking if _overlaps(requested, duration, item)]
    if not clashing:
        return None

    suggestions: List[SlotSuggestion] = []
    for slot in time_slots():
        start = _minutes(slot)
        if start == requested:
            continue
        if any(_overlaps(start, duration, item) for item in blocking):
            continue
        suggestions.append(SlotSuggestion(date=day, time=slot))
        if len(suggestions) >= MAX_SUGGESTIONS:
            break
    if not suggestions:
        suggestions.append(SlotSuggestion(date=day + timedelta(days=1), time=start_time))
    return SchedulingConflict(
        date=day, time=start_time, conflicting=clashing, suggestions=suggestions
    )
