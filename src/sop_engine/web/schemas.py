from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field


class ListItemIn(BaseModel):
    id: str
    text: str
    is_optional: bool = False


class OverridesIn(BaseModel):
    assigned_to: Optional[str] = None
    skip_steps: List[str] = Field(default_factory=list)
    estimated_duration: Optional[float] = None


class StepIn(BaseModel):
    id: Optional[str] = None
    step_number: int = 0
    title: str
    description: str = ""
    estimated_duration: float = 0
    is_optional: bool = False
    dependencies: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    type: str = "standard"
    embedded_procedure_id: Optional[str] = None
    overrides: OverridesIn = Field(default_factory=OverridesIn)
    list_items: List[ListItemIn] = Field(default_factory=list)


class RecurrenceIn(BaseModel):
    frequency: str
    days_of_week: List[int] = Field(default_factory=list)
    time_of_day: Optional[str] = None
    skip_holidays: bool = False
    anchor_date: Optional[date] = None


class ProcedureCreate(BaseModel):
    context_id: str
    name: str
    description: str = ""
    category: str = "custom"
    tags: List[str] = Field(default_factory=list)
    difficulty: str = "medium"
    status: str = "active"
    assignable_members: List[str] = Field(default_factory=list)
    default_assignee: Optional[str] = None
    requires_confirmation: bool = False
    can_be_embedded: bool = True
    is_standalone: bool = True
    steps: List[StepIn] = Field(default_factory=list)
    execution_order: str = "sequential"
    is_recurring: bool = False
    recurrence: Optional[RecurrenceIn] = None
    created_by: Optional[str] = None


class ProcedureUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    difficulty: Optional[str] = None
    status: Optional[str] = None
    assignable_members: Optional[List[str]] = None
    default_assignee: Optional[str] = None
    requires_confirmation: Optional[bool] = None
    can_be_embedded: Optional[bool] = None
    is_standalone: Optional[bool] = None
    steps: Optional[List[StepIn]] = None
    execution_order: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurrence: Optional[RecurrenceIn] = None


class ScheduleWindow(BaseModel):
    start: date
    end: date


class CompletionCreate(BaseModel):
    procedure_id: str
    scheduled_date: date
    scheduled_time: Optional[str] = None
    assigned_to: Optional[str] = None


class StepAction(BaseModel):
    step_id: str
    procedure_version: Optional[int] = None
    note: Optional[str] = None


class ListItemAction(BaseModel):
    step_id: str
    item_id: str
    procedure_version: Optional[int] = None


class FinishRequest(BaseModel):
    completed_by: Optional[str] = None
    confirmed_by: Optional[str] = None
    automated: bool = False
    notes: Optional[str] = None
    rating: Optional[int] = None
    suggestions: Optional[str] = None
    procedure_version: Optional[int] = None


class SkipRequest(BaseModel):
    reason: Optional[str] = None


class AbandonRequest(BaseModel):
    issues: Optional[str] = None


class RescheduleRequest(BaseModel):
    scheduled_date: date
    scheduled_time: Optional[str] = None


class TemplateCreate(BaseModel):
    name: str
    description: str = ""
    category: str = "custom"
    tags: List[str] = Field(default_factory=list)
    steps: List[StepIn] = Field(default_factory=list)
    difficulty: str = "medium"
    is_public: bool = True
    rating: float = 0
    created_by: Optional[str] = None


class TemplateInstantiate(BaseModel):
    context_id: str
    created_by: Optional[str] = None
    name: Optional[str] = None
    assignable_members: List[str] = Field(default_factory=list)
    default_assignee: Optional[str] = None
