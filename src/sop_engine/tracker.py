"""Execution tracking: the per-occurrence state machine.

Every event goes through ``TRANSITIONS`` (status x event -> status); anything
not in the table is an ``InvalidTransition``. Each operation is a single
atomic read-modify-write of the completion record, and none of them touch
the procedure record itself. Terminal transitions hand the completion to the
analytics aggregator afterwards.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .composition import CompositionResolver, EffectiveStep
from .errors import (
    ConfirmationRequired,
    InvalidRating,
    InvalidTransition,
    ProcedureNotFound,
    ProcedureNotSchedulable,
    StaleVersion,
    UnknownListItem,
    UnknownStep,
)
from .models import Completion, CompletionStatus, ProcedureStatus

logger = logging.getLogger(__name__)


class Event(str, Enum):
    START = "start"
    COMPLETE_STEP = "complete_step"
    SKIP_STEP = "skip_step"
    NOTE_STEP = "note_step"
    COMPLETE_LIST_ITEM = "complete_list_item"
    UNCOMPLETE_LIST_ITEM = "uncomplete_list_item"
    FINISH = "finish"
    SKIP = "skip"
    ABANDON = "abandon"
    RESCHEDULE = "reschedule"


_S = CompletionStatus

TRANSITIONS = {
    (_S.SCHEDULED, Event.START): _S.IN_PROGRESS,
    (_S.SCHEDULED, Event.SKIP): _S.SKIPPED,
    (_S.SCHEDULED, Event.ABANDON): _S.FAILED,
    (_S.SCHEDULED, Event.RESCHEDULE): _S.SCHEDULED,
    (_S.IN_PROGRESS, Event.COMPLETE_STEP): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, Event.SKIP_STEP): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, Event.NOTE_STEP): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, Event.COMPLETE_LIST_ITEM): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, Event.UNCOMPLETE_LIST_ITEM): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, Event.FINISH): _S.COMPLETED,
    (_S.IN_PROGRESS, Event.SKIP): _S.SKIPPED,
    (_S.IN_PROGRESS, Event.ABANDON): _S.FAILED,
}


def next_status(completion: Completion, event: Event) -> CompletionStatus:
    try:
        return TRANSITIONS[(completion.status, event)]
    except KeyError:
        raise InvalidTransition(
            completion.id, completion.status.value, event.value
        ) from None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(at: Optional[datetime]) -> datetime:
    """Timestamps are stored UTC-aware; naive values are taken as UTC."""
    if at is None:
        return _now()
    if at.tzinfo is None:
        return at.replace(tzinfo=timezone.utc)
    return at


def _check_version(completion: Completion, procedure_version: Optional[int]) -> None:
    if procedure_version is not None and procedure_version != completion.procedure_version:
        raise StaleVersion(completion.id, completion.procedure_version, procedure_version)


def _check_step(completion: Completion, step_id: str) -> None:
    if step_id not in completion.step_ids:
        raise UnknownStep(completion.id, step_id)


class ExecutionTracker:
    def __init__(self, store, aggregator=None):
        self.store = store
        self.aggregator = aggregator
        self.resolver = CompositionResolver(store.get_procedure)

    def create_occurrence(
        self,
        procedure_id: str,
        scheduled_date: date,
        scheduled_time: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> Completion:
        """Create a scheduled completion pinned to the procedure's current version
        and flattened step ids."""
        procedure = self.store.get_procedure(procedure_id)
        if procedure.status == ProcedureStatus.ARCHIVED:
            raise ProcedureNotSchedulable(procedure_id, "procedure is archived")
        resolved = self.resolver.resolve(procedure)
        completion = Completion(
            id="",
            procedure_id=procedure.id,
            context_id=procedure.context_id,
            procedure_version=procedure.version,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            step_ids=resolved.step_ids,
            requires_confirmation=procedure.requires_confirmation,
            assigned_to=assigned_to or procedure.default_assignee,
        )
        completion = self.store.insert_completion(completion)
        logger.info(
            "Scheduled completion %s for procedure %s v%s on %s",
            completion.id,
            procedure.id,
            procedure.version,
            scheduled_date,
        )
        return completion

    def start(self, completion_id: str, at: Optional[datetime] = None) -> Completion:
        def mutate(c: Completion):
            c.status = next_status(c, Event.START)
            c.started_at = _aware(at)
            return Event.START.value

        return self.store.mutate_completion(completion_id, mutate)

    def complete_step(
        self,
        completion_id: str,
        step_id: str,
        procedure_version: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Completion:
        def mutate(c: Completion):
            _check_version(c, procedure_version)
            c.status = next_status(c, Event.COMPLETE_STEP)
            _check_step(c, step_id)
            if step_id in c.skipped_steps:
                c.skipped_steps.remove(step_id)
            if step_id not in c.completed_steps:
                c.completed_steps.append(step_id)
            if note:
                c.step_notes[step_id] = note
            return Event.COMPLETE_STEP.value

        return self.store.mutate_completion(completion_id, mutate)

    def skip_step(
        self,
        completion_id: str,
        step_id: str,
        procedure_version: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Completion:
        def mutate(c: Completion):
            _check_version(c, procedure_version)
            c.status = next_status(c, Event.SKIP_STEP)
            _check_step(c, step_id)
            if step_id in c.completed_steps:
                c.completed_steps.remove(step_id)
            if step_id not in c.skipped_steps:
                c.skipped_steps.append(step_id)
            if note:
                c.step_notes[step_id] = note
            return Event.SKIP_STEP.value

        return self.store.mutate_completion(completion_id, mutate)

    def note_step(
        self,
        completion_id: str,
        step_id: str,
        note: str,
        procedure_version: Optional[int] = None,
    ) -> Completion:
        def mutate(c: Completion):
            _check_version(c, procedure_version)
            c.status = next_status(c, Event.NOTE_STEP)
            _check_step(c, step_id)
            c.step_notes[step_id] = note
            return Event.NOTE_STEP.value

        return self.store.mutate_completion(completion_id, mutate)

    def complete_list_item(
        self,
        completion_id: str,
        step_id: str,
        item_id: str,
        procedure_version: Optional[int] = None,
    ) -> Completion:
        """Tick one checklist item of a list step."""
        item_ids = self._list_item_ids(completion_id, step_id)

        def mutate(c: Completion):
            _check_version(c, procedure_version)
            c.status = next_status(c, Event.COMPLETE_LIST_ITEM)
            _check_step(c, step_id)
            if item_id not in item_ids:
                raise UnknownListItem(c.id, step_id, item_id)
            done = c.completed_list_items.setdefault(step_id, [])
            if item_id not in done:
                done.append(item_id)
            return Event.COMPLETE_LIST_ITEM.value

        return self.store.mutate_completion(completion_id, mutate)

    def uncomplete_list_item(
        self,
        completion_id: str,
        step_id: str,
        item_id: str,
        procedure_version: Optional[int] = None,
    ) -> Completion:
        item_ids = self._list_item_ids(completion_id, step_id)

        def mutate(c: Completion):
            _check_version(c, procedure_version)
            c.status = next_status(c, Event.UNCOMPLETE_LIST_ITEM)
            _check_step(c, step_id)
            if item_id not in item_ids:
                raise UnknownListItem(c.id, step_id, item_id)
            done = c.completed_list_items.get(step_id, [])
            if item_id in done:
                done.remove(item_id)
            if not done:
                c.completed_list_items.pop(step_id, None)
            return Event.UNCOMPLETE_LIST_ITEM.value

        return self.store.mutate_completion(completion_id, mutate)

    def finish(
        self,
        completion_id: str,
        completed_by: Optional[str] = None,
        confirmed_by: Optional[str] = None,
        automated: bool = False,
        notes: Optional[str] = None,
        rating: Optional[int] = None,
        suggestions: Optional[str] = None,
        procedure_version: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> Completion:
        """in-progress -> completed; records timing and feeds analytics.

        When the pinned policy requires confirmation, ``confirmed_by`` must name a
        member and the call must not come from an automated trigger.
        """
        if rating is not None and not 1 <= rating <= 5:
            raise InvalidRating(rating)

        def mutate(c: Completion):
            _check_version(c, procedure_version)
            status = next_status(c, Event.FINISH)
            if c.requires_confirmation and (automated or not confirmed_by):
                raise ConfirmationRequired(c.id, c.status.value)
            c.status = status
            c.completed_at = _aware(at)
            c.actual_duration = round(
                (c.completed_at - _aware(c.started_at)).total_seconds() / 60, 2
            )
            c.completed_by = completed_by or c.assigned_to
            c.confirmed_by = confirmed_by
            c.completion_notes = notes
            c.rating = rating
            c.suggestions = suggestions
            return Event.FINISH.value

        completion = self.store.mutate_completion(completion_id, mutate)
        logger.info(
            "Completion %s finished in %s minutes",
            completion.id,
            completion.actual_duration,
        )
        self._feed_analytics(completion)
        return completion

    def skip(self, completion_id: str, reason: Optional[str] = None) -> Completion:
        def mutate(c: Completion):
            c.status = next_status(c, Event.SKIP)
            if reason:
                c.completion_notes = reason
            return Event.SKIP.value

        completion = self.store.mutate_completion(completion_id, mutate)
        self._feed_analytics(completion)
        return completion

    def abandon(self, completion_id: str, issues: Optional[str] = None) -> Completion:
        def mutate(c: Completion):
            c.status = next_status(c, Event.ABANDON)
            c.issues = issues
            return Event.ABANDON.value

        completion = self.store.mutate_completion(completion_id, mutate)
        logger.info("Completion %s abandoned: %s", completion.id, issues)
        self._feed_analytics(completion)
        return completion

    def reschedule(
        self,
        completion_id: str,
        scheduled_date: date,
        scheduled_time: Optional[str] = None,
    ) -> Completion:
        """Calendar drag/edit of a not-yet-started occurrence."""

        def mutate(c: Completion):
            c.status = next_status(c, Event.RESCHEDULE)
            c.scheduled_date = scheduled_date
            if scheduled_time is not None:
                c.scheduled_time = scheduled_time
            return Event.RESCHEDULE.value

        return self.store.mutate_completion(completion_id, mutate)

    def available_steps(self, completion_id: str) -> List[EffectiveStep]:
        completion = self.store.get_completion(completion_id)
        resolved = self.resolver.resolve(self._pinned_procedure(completion))
        pinned = set(completion.step_ids)
        resolved.steps = [s for s in resolved.steps if s.id in pinned]
        done = set(completion.completed_steps) | set(completion.skipped_steps)
        return resolved.available_steps(done)

    def _pinned_procedure(self, completion: Completion):
        return self.store.get_procedure(
            completion.procedure_id, version=completion.procedure_version
        )

    def _list_item_ids(self, completion_id: str, step_id: str) -> List[str]:
        # Checklist items come from the pinned version, never the current one
        completion = self.store.get_completion(completion_id)
        resolved = self.resolver.resolve(self._pinned_procedure(completion))
        steps: Dict[str, EffectiveStep] = {s.id: s for s in resolved.steps}
        if step_id not in steps or step_id not in completion.step_ids:
            raise UnknownStep(completion_id, step_id)
        return [item.id for item in steps[step_id].step.list_items]

    def _feed_analytics(self, completion: Completion) -> None:
        if self.aggregator is None:
            return
        try:
            self.aggregator.record(completion)
        except ProcedureNotFound:
            # The transition itself is already committed
            logger.warning(
                "Skipped analytics for completion %s: procedure %s no longer exists",
                completion.id,
                completion.procedure_id,
            )
