"""Wiring of the store, resolver, tracker, scheduler and aggregator."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from .analytics import AnalyticsAggregator
from .composition import CompositionResolver, ResolvedProcedure
from .errors import ProcedureNotFound
from .models import CalendarItem, ProcedureStatus, SchedulingConflict, WorkItem
from .projection import calendar_item, find_conflicts, slot_item, to_work_item
from .recurrence import HolidayCalendar, RecurrenceScheduler
from .store import SQLiteStore
from .tracker import ExecutionTracker


class SOPEngine:
    def __init__(
        self,
        store: Optional[SQLiteStore] = None,
        holidays: Optional[HolidayCalendar] = None,
    ):
        self.store = store or SQLiteStore()
        self.aggregator = AnalyticsAggregator(self.store)
        self.tracker = ExecutionTracker(self.store, self.aggregator)
        self.scheduler = RecurrenceScheduler(self.store, self.tracker, holidays)

    def resolve(
        self,
        procedure_id: str,
        context_id: Optional[str] = None,
        version: Optional[int] = None,
    ) -> ResolvedProcedure:
        procedure = self.store.get_procedure(procedure_id, version=version)
        if context_id is not None and procedure.context_id != context_id:
            raise ProcedureNotFound(procedure_id)
        return CompositionResolver(self.store.get_procedure).resolve(procedure)

    def work_item(self, procedure_id: str, assignee: Optional[str] = None) -> WorkItem:
        return to_work_item(self.resolve(procedure_id), assignee)

    def calendar(
        self,
        context_id: str,
        start: date,
        end: date,
        include_slots: bool = False,
    ) -> List[CalendarItem]:
        """Calendar items for a context; optionally with unmaterialized recurrence
        slots of active recurring procedures."""
        procedures = {
            p.id: p for p in self.store.list_procedures(context_id, include_archived=True)
        }
        items = []
        for completion in self.store.list_completions(
            context_id=context_id, start=start, end=end
        ):
            procedure = procedures.get(completion.procedure_id)
            if procedure is None:
                continue
            items.append(calendar_item(completion, procedure))
        if include_slots:
            for procedure in procedures.values():
                if not procedure.is_recurring or procedure.status != ProcedureStatus.ACTIVE:
                    continue
                for occ in self.scheduler.preview(procedure.id, start, end):
                    items.append(slot_item(occ, procedure))
        items.sort(key=lambda i: (i.date, i.start_time))
        return items

    def check_conflicts(
        self,
        context_id: str,
        day: date,
        start_time: str,
        duration: float,
        assignee: Optional[str] = None,
        exclude_completion_id: Optional[str] = None,
    ) -> Optional[SchedulingConflict]:
        """Overlaps between a requested slot and the context's occurrences that day."""
        items = self.calendar(context_id, day, day)
        return find_conflicts(
            items, day, start_time, duration, assignee, exclude_completion_id
        )
