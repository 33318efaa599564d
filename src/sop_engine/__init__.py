"""sop_engine package initialization.

Public API surface:
 - CompositionResolver / resolve: flatten a procedure and its embedded procedures
 - expand_recurrence: project a recurrence rule into dated occurrences
 - ExecutionTracker: per-occurrence state machine
 - AnalyticsAggregator: fold completion history into procedure analytics
 - SQLiteStore: default record store
 - SOPEngine: all of the above wired over one store
"""
from .analytics import AnalyticsAggregator
from .composition import CompositionResolver, resolve
from .engine import SOPEngine
from .recurrence import expand_recurrence
from .store import SQLiteStore
from .tracker import ExecutionTracker

__all__ = [
    "AnalyticsAggregator",
    "CompositionResolver",
    "ExecutionTracker",
    "SOPEngine",
    "SQLiteStore",
    "expand_recurrence",
    "resolve",
]
