"""Analytics aggregation over a procedure's execution history.

The history grows without bound, so the summary is maintained as an
incremental windowed fold: a bounded deque of recent durations with a running
sum, and a bounded deque of recent terminal outcomes. Each new terminal
completion is folded in without re-scanning older history.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Deque, Iterable, Optional, Tuple

from . import config
from .models import AnalyticsSummary, Completion, CompletionStatus

logger = logging.getLogger(__name__)


@dataclass
class AnalyticsState:
    average_window: int = 10
    rate_window: int = 30
    rate_days: int = 90
    durations: Deque[float] = field(default_factory=deque)
    duration_sum: float = 0.0
    outcomes: Deque[Tuple[date, str]] = field(default_factory=deque)

    def __post_init__(self):
        self.durations = deque(self.durations, maxlen=self.average_window)
        self.duration_sum = float(sum(self.durations))
        self.outcomes = deque(self.outcomes, maxlen=self.rate_window)

    def fold_duration(self, minutes: float) -> None:
        if len(self.durations) == self.durations.maxlen:
            self.duration_sum -= self.durations[0]
        self.durations.append(minutes)
        self.duration_sum += minutes

    def fold_outcome(self, day: date, status: CompletionStatus) -> None:
        """Insert an outcome keeping the window ordered by scheduled date.

        Late arrivals for earlier dates land where a full replay would put
        them; one older than every entry of a full window falls out directly.
        """
        entry = (day, CompletionStatus(status).value)
        position = len(self.outcomes)
        while position and self.outcomes[position - 1][0] > day:
            position -= 1
        if len(self.outcomes) == self.outcomes.maxlen:
            if position == 0:
                return
            self.outcomes.popleft()
            position -= 1
        self.outcomes.insert(position, entry)

    def fold(self, completion: Completion) -> None:
        status = completion.status
        if not status.is_terminal:
            return
        if status == CompletionStatus.COMPLETED and completion.actual_duration is not None:
            self.fold_duration(float(completion.actual_duration))
        self.fold_outcome(completion.scheduled_date, status)

    @property
    def average_completion_time(self) -> Optional[float]:
        if not self.durations:
            return None
        return round(self.duration_sum / len(self.durations), 4)

    def completion_rate(self, reference: Optional[date] = None) -> Optional[float]:
        """completed / terminal over the last ``rate_window`` outcomes that also
        fall within ``rate_days`` of the reference (default: latest outcome)."""
        if not self.outcomes:
            return None
        reference = reference or max(day for day, _ in self.outcomes)
        cutoff = reference - timedelta(days=self.rate_days)
        recent = [status for day, status in self.outcomes if cutoff < day <= reference]
        if not recent:
            return None
        completed = sum(1 for s in recent if s == CompletionStatus.COMPLETED.value)
        return round(completed / len(recent), 4)

    def summary(self, now: Optional[datetime] = None) -> AnalyticsSummary:
        return AnalyticsSummary(
            average_completion_time=self.average_completion_time,
            completion_rate=self.completion_rate(),
            last_optimized=now or datetime.now(timezone.utc),
        )

    def to_dict(self) -> dict:
        return {
            "durations": list(self.durations),
            "duration_sum": self.duration_sum,
            "outcomes": [[day.isoformat(), status] for day, status in self.outcomes],
        }

    @classmethod
    def from_dict(
        cls,
        data: Optional[dict],
        average_window: Optional[int] = None,
        rate_window: Optional[int] = None,
        rate_days: Optional[int] = None,
    ) -> "AnalyticsState":
        data = data or {}
        return cls(
            average_window=average_window or config.get_average_window(),
            rate_window=rate_window or config.get_rate_window(),
            rate_days=rate_days or config.get_rate_days(),
            durations=deque(float(d) for d in data.get("durations") or []),
            outcomes=deque(
                (date.fromisoformat(day), status)
                for day, status in data.get("outcomes") or []
            ),
        )


def _stamp(completion: Completion) -> str:
    moment = completion.completed_at or completion.updated_at
    return moment.isoformat() if moment else ""


def replay(completions: Iterable[Completion], **windows) -> AnalyticsState:
    """Fold a full history (oldest first) into a fresh state."""
    state = AnalyticsState.from_dict(None, **windows)
    ordered = sorted(
        (c for c in completions if c.status.is_terminal),
        key=lambda c: (c.scheduled_date, _stamp(c)),
    )
    for c in ordered:
        state.fold(c)
    return state


class AnalyticsAggregator:
    """Folds terminal completions into the owning procedure's analytics summary."""

    def __init__(
        self,
        store,
        average_window: Optional[int] = None,
        rate_window: Optional[int] = None,
        rate_days: Optional[int] = None,
    ):
        self.store = store
        self.windows = dict(
            average_window=average_window,
            rate_window=rate_window,
            rate_days=rate_days,
        )

    def record(self, completion: Completion) -> AnalyticsSummary:
        def fold(raw: Optional[dict]):
            state = AnalyticsState.from_dict(raw, **self.windows)
            state.fold(completion)
            return state.summary(), state.to_dict()

        summary = self.store.mutate_analytics(completion.procedure_id, fold)
        logger.info(
            "Analytics for procedure %s: avg=%s rate=%s (after %s %s)",
            completion.procedure_id,
            summary.average_completion_time,
            summary.completion_rate,
            completion.status.value,
            completion.id,
        )
        return summary

    def rebuild(self, procedure_id: str) -> AnalyticsSummary:
        history = self.store.list_completions(procedure_id=procedure_id)
        state = replay(history, **self.windows)
        summary = self.store.mutate_analytics(
            procedure_id, lambda _raw: (state.summary(), state.to_dict())
        )
        logger.info(
            "Rebuilt analytics for procedure %s from %d completions",
            procedure_id,
            len(history),
        )
        return summary
