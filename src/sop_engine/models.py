"""Record types for procedures, occurrences and their projections.

Records are plain dataclasses so resolution and scheduling can run over an
already-loaded snapshot. ``to_dict``/``from_dict`` give the JSON shape used
by the store and the HTTP layer.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Category(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    LEAVING = "leaving"
    CLEANUP = "cleanup"
    MEAL_PREP = "meal-prep"
    WORK = "work"
    CUSTOM = "custom"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class ProcedureStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ExecutionOrder(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    FLEXIBLE = "flexible"


class StepType(str, Enum):
    STANDARD = "standard"
    EMBEDDED = "embedded_sop"
    LIST = "list"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class CompletionStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {CompletionStatus.COMPLETED, CompletionStatus.SKIPPED, CompletionStatus.FAILED}
)

# Fields whose change counts as a structural edit and bumps Procedure.version
STRUCTURAL_FIELDS = ("steps", "recurrence", "is_recurring", "execution_order")


def _dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _d(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _iso(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _jsonable(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in data]
    return _iso(data)


@dataclass
class ListItem:
    id: str
    text: str
    is_optional: bool = False


@dataclass
class EmbeddedOverrides:
    assigned_to: Optional[str] = None
    skip_steps: List[str] = field(default_factory=list)
    estimated_duration: Optional[float] = None


@dataclass
class Step:
    id: str
    step_number: int
    title: str
    estimated_duration: float = 0
    description: str = ""
    is_optional: bool = False
    dependencies: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    type: StepType = StepType.STANDARD
    embedded_procedure_id: Optional[str] = None
    overrides: EmbeddedOverrides = field(default_factory=EmbeddedOverrides)
    list_items: List[ListItem] = field(default_factory=list)

    @property
    def is_embedded_procedure(self) -> bool:
        return self.type == StepType.EMBEDDED and bool(self.embedded_procedure_id)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        overrides = data.get("overrides") or {}
        return cls(
            id=str(data.get("id") or ""),
            step_number=int(data.get("step_number", 0)),
            title=data.get("title", ""),
            estimated_duration=data.get("estimated_duration") or 0,
            description=data.get("description") or "",
            is_optional=bool(data.get("is_optional", False)),
            dependencies=list(data.get("dependencies") or []),
            notes=data.get("notes"),
            type=StepType(data.get("type") or StepType.STANDARD.value),
            embedded_procedure_id=data.get("embedded_procedure_id"),
            overrides=EmbeddedOverrides(
                assigned_to=overrides.get("assigned_to"),
                skip_steps=list(overrides.get("skip_steps") or []),
                estimated_duration=overrides.get("estimated_duration"),
            ),
            list_items=[ListItem(**item) for item in data.get("list_items") or []],
        )


@dataclass
class RecurrenceRule:
    frequency: Frequency
    days_of_week: List[int] = field(default_factory=list)  # 0-6, Sunday = 0
    time_of_day: Optional[str] = None  # "HH:MM"
    skip_holidays: bool = False
    anchor_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        return cls(
            frequency=Frequency(data["frequency"]),
            days_of_week=[int(d) for d in data.get("days_of_week") or []],
            time_of_day=data.get("time_of_day"),
            skip_holidays=bool(data.get("skip_holidays", False)),
            anchor_date=_d(data.get("anchor_date")),
        )


@dataclass
class AnalyticsSummary:
    average_completion_time: Optional[float] = None
    completion_rate: Optional[float] = None
    last_optimized: Optional[datetime] = None


@dataclass
class Procedure:
    id: str
    context_id: str
    name: str
    steps: List[Step] = field(default_factory=list)
    description: str = ""
    category: Category = Category.CUSTOM
    tags: List[str] = field(default_factory=list)
    estimated_duration: float = 0
    difficulty: Difficulty = Difficulty.MEDIUM
    status: ProcedureStatus = ProcedureStatus.ACTIVE
    assignable_members: List[str] = field(default_factory=list)
    default_assignee: Optional[str] = None
    requires_confirmation: bool = False
    can_be_embedded: bool = True
    is_standalone: bool = True
    embedded_procedures: List[str] = field(default_factory=list)
    execution_order: ExecutionOrder = ExecutionOrder.SEQUENTIAL
    is_recurring: bool = False
    recurrence: Optional[RecurrenceRule] = None
    analytics: AnalyticsSummary = field(default_factory=AnalyticsSummary)
    version: int = 1
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def embedded_ids(self) -> List[str]:
        return [s.embedded_procedure_id for s in self.steps if s.is_embedded_procedure]

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Procedure":
        analytics = data.get("analytics") or {}
        recurrence = data.get("recurrence")
        return cls(
            id=str(data.get("id") or ""),
            context_id=data["context_id"],
            name=data["name"],
            steps=[Step.from_dict(s) for s in data.get("steps") or []],
            description=data.get("description") or "",
            category=Category(data.get("category") or Category.CUSTOM.value),
            tags=list(data.get("tags") or []),
            estimated_duration=data.get("estimated_duration") or 0,
            difficulty=Difficulty(data.get("difficulty") or Difficulty.MEDIUM.value),
            status=ProcedureStatus(data.get("status") or ProcedureStatus.ACTIVE.value),
            assignable_members=list(data.get("assignable_members") or []),
            default_assignee=data.get("default_assignee"),
            requires_confirmation=bool(data.get("requires_confirmation", False)),
            can_be_embedded=bool(data.get("can_be_embedded", True)),
            is_standalone=data.get("is_standalone") is not False,
            embedded_procedures=list(data.get("embedded_procedures") or []),
            execution_order=ExecutionOrder(
                data.get("execution_order") or ExecutionOrder.SEQUENTIAL.value
            ),
            is_recurring=bool(data.get("is_recurring", False)),
            recurrence=RecurrenceRule.from_dict(recurrence) if recurrence else None,
            analytics=AnalyticsSummary(
                average_completion_time=analytics.get("average_completion_time"),
                completion_rate=analytics.get("completion_rate"),
                last_optimized=_dt(analytics.get("last_optimized")),
            ),
            version=int(data.get("version") or 1),
            created_by=data.get("created_by"),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
        )


@dataclass
class Completion:
    id: str
    procedure_id: str
    context_id: str
    procedure_version: int
    scheduled_date: date
    step_ids: List[str] = field(default_factory=list)
    requires_confirmation: bool = False
    assigned_to: Optional[str] = None
    completed_by: Optional[str] = None
    confirmed_by: Optional[str] = None
    scheduled_time: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration: Optional[float] = None  # minutes
    completed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    step_notes: Dict[str, str] = field(default_factory=dict)
    completed_list_items: Dict[str, List[str]] = field(default_factory=dict)
    status: CompletionStatus = CompletionStatus.SCHEDULED
    completion_notes: Optional[str] = None
    rating: Optional[int] = None
    issues: Optional[str] = None
    suggestions: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    row_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Completion":
        return cls(
            id=str(data["id"]),
            procedure_id=str(data["procedure_id"]),
            context_id=data["context_id"],
            procedure_version=int(data["procedure_version"]),
            scheduled_date=_d(data["scheduled_date"]),
            step_ids=list(data.get("step_ids") or []),
            requires_confirmation=bool(data.get("requires_confirmation", False)),
            assigned_to=data.get("assigned_to"),
            completed_by=data.get("completed_by"),
            confirmed_by=data.get("confirmed_by"),
            scheduled_time=data.get("scheduled_time"),
            started_at=_dt(data.get("started_at")),
            completed_at=_dt(data.get("completed_at")),
            actual_duration=data.get("actual_duration"),
            completed_steps=list(data.get("completed_steps") or []),
            skipped_steps=list(data.get("skipped_steps") or []),
            step_notes=dict(data.get("step_notes") or {}),
            completed_list_items={
                k: list(v) for k, v in (data.get("completed_list_items") or {}).items()
            },
            status=CompletionStatus(data.get("status") or "scheduled"),
            completion_notes=data.get("completion_notes"),
            rating=data.get("rating"),
            issues=data.get("issues"),
            suggestions=data.get("suggestions"),
            created_at=_dt(data.get("created_at")),
            updated_at=_dt(data.get("updated_at")),
            row_version=int(data.get("row_version") or 0),
        )


@dataclass
class Template:
    id: str
    name: str
    steps: List[Dict[str, Any]] = field(default_factory=list)  # Step fields minus id
    description: str = ""
    category: Category = Category.CUSTOM
    tags: List[str] = field(default_factory=list)
    estimated_duration: float = 0
    difficulty: Difficulty = Difficulty.MEDIUM
    is_public: bool = True
    usage_count: int = 0
    rating: float = 0
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        return cls(
            id=str(data.get("id") or ""),
            name=data["name"],
            steps=list(data.get("steps") or []),
            description=data.get("description") or "",
            category=Category(data.get("category") or Category.CUSTOM.value),
            tags=list(data.get("tags") or []),
            estimated_duration=data.get("estimated_duration") or 0,
            difficulty=Difficulty(data.get("difficulty") or Difficulty.MEDIUM.value),
            is_public=bool(data.get("is_public", True)),
            usage_count=int(data.get("usage_count") or 0),
            rating=data.get("rating") or 0,
            created_by=data.get("created_by"),
            created_at=_dt(data.get("created_at")),
        )


@dataclass
class Occurrence:
    """A candidate occurrence produced by recurrence expansion."""

    procedure_id: str
    date: date
    time: str
    assigned_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class CalendarItem:
    id: str
    procedure_id: str
    procedure_name: str
    category: Category
    estimated_duration: float
    date: date
    start_time: str
    end_time: str
    status: CompletionStatus
    color: str
    is_draggable: bool
    assigned_to: Optional[str] = None
    completion_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class WorkItem:
    title: str
    estimated_duration: float
    context: str
    assignee: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class SlotSuggestion:
    date: date
    time: str

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class SchedulingConflict:
    """Occurrences overlapping a requested slot, with free alternatives."""

    date: date
    time: str
    conflicting: List[CalendarItem] = field(default_factory=list)
    suggestions: List[SlotSuggestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))
