from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...engine import SOPEngine
from ...projection import calendar_item
from ..db import get_engine
from ..schemas import RescheduleRequest

router = APIRouter(prefix="/calendar")


@router.get("", response_class=JSONResponse)
def list_calendar(
    context_id: str,
    start: date,
    end: date,
    include_slots: bool = False,
    engine: SOPEngine = Depends(get_engine),
):
    items = engine.calendar(context_id, start, end, include_slots=include_slots)
    return [i.to_dict() for i in items]


@router.get("/conflicts", response_class=JSONResponse)
def check_conflicts(
    context_id: str,
    day: date,
    start_time: str,
    duration: float,
    assignee: Optional[str] = None,
    exclude_completion_id: Optional[str] = None,
    engine: SOPEngine = Depends(get_engine),
):
    conflict = engine.check_conflicts(
        context_id, day, start_time, duration, assignee, exclude_completion_id
    )
    return {"conflict": conflict.to_dict() if conflict else None}


@router.patch("/{completion_id}", response_class=JSONResponse)
def reschedule(
    completion_id: str, payload: RescheduleRequest, engine: SOPEngine = Depends(get_engine)
):
    # Single update call; the calendar never edits completion fields directly
    completion = engine.tracker.reschedule(
        completion_id, payload.scheduled_date, payload.scheduled_time
    )
    procedure = engine.store.get_procedure(completion.procedure_id)
    return calendar_item(completion, procedure).to_dict()
