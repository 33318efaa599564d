from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...audit import list_audit
from ...engine import SOPEngine
from ..db import get_engine
from ..schemas import (
    AbandonRequest,
    CompletionCreate,
    FinishRequest,
    ListItemAction,
    SkipRequest,
    StepAction,
)

router = APIRouter(prefix="/completions")


@router.post("", response_class=JSONResponse, status_code=201)
def create_completion(payload: CompletionCreate, engine: SOPEngine = Depends(get_engine)):
    completion = engine.tracker.create_occurrence(
        payload.procedure_id,
        payload.scheduled_date,
        scheduled_time=payload.scheduled_time,
        assigned_to=payload.assigned_to,
    )
    return completion.to_dict()


@router.get("", response_class=JSONResponse)
def list_completions(
    procedure_id: Optional[str] = None,
    context_id: Optional[str] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    status: Optional[str] = None,
    engine: SOPEngine = Depends(get_engine),
):
    rows = engine.store.list_completions(
        procedure_id=procedure_id,
        context_id=context_id,
        start=start,
        end=end,
        status=status,
    )
    return [c.to_dict() for c in rows]


@router.get("/{completion_id}", response_class=JSONResponse)
def get_completion(completion_id: str, engine: SOPEngine = Depends(get_engine)):
    return engine.store.get_completion(completion_id).to_dict()


@router.post("/{completion_id}/start", response_class=JSONResponse)
def start_completion(completion_id: str, engine: SOPEngine = Depends(get_engine)):
    return engine.tracker.start(completion_id).to_dict()


@router.post("/{completion_id}/steps/complete", response_class=JSONResponse)
def complete_step(
    completion_id: str, payload: StepAction, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.complete_step(
        completion_id,
        payload.step_id,
        procedure_version=payload.procedure_version,
        note=payload.note,
    )
    return completion.to_dict()


@router.post("/{completion_id}/steps/skip", response_class=JSONResponse)
def skip_step(
    completion_id: str, payload: StepAction, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.skip_step(
        completion_id,
        payload.step_id,
        procedure_version=payload.procedure_version,
        note=payload.note,
    )
    return completion.to_dict()


@router.post("/{completion_id}/steps/note", response_class=JSONResponse)
def note_step(
    completion_id: str, payload: StepAction, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.note_step(
        completion_id,
        payload.step_id,
        payload.note or "",
        procedure_version=payload.procedure_version,
    )
    return completion.to_dict()


@router.post("/{completion_id}/list-items/complete", response_class=JSONResponse)
def complete_list_item(
    completion_id: str, payload: ListItemAction, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.complete_list_item(
        completion_id,
        payload.step_id,
        payload.item_id,
        procedure_version=payload.procedure_version,
    )
    return completion.to_dict()


@router.post("/{completion_id}/list-items/uncomplete", response_class=JSONResponse)
def uncomplete_list_item(
    completion_id: str, payload: ListItemAction, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.uncomplete_list_item(
        completion_id,
        payload.step_id,
        payload.item_id,
        procedure_version=payload.procedure_version,
    )
    return completion.to_dict()


@router.get("/{completion_id}/available-steps", response_class=JSONResponse)
def available_steps(completion_id: str, engine: SOPEngine = Depends(get_engine)):
    return [s.to_dict() for s in engine.tracker.available_steps(completion_id)]


@router.post("/{completion_id}/finish", response_class=JSONResponse)
def finish_completion(
    completion_id: str, payload: FinishRequest, engine: SOPEngine = Depends(get_engine)
):
    completion = engine.tracker.finish(completion_id, **payload.model_dump())
    return completion.to_dict()


@router.post("/{completion_id}/skip", response_class=JSONResponse)
def skip_completion(
    completion_id: str, payload: SkipRequest, engine: SOPEngine = Depends(get_engine)
):
    return engine.tracker.skip(completion_id, payload.reason).to_dict()


@router.post("/{completion_id}/abandon", response_class=JSONResponse)
def abandon_completion(
    completion_id: str, payload: AbandonRequest, engine: SOPEngine = Depends(get_engine)
):
    return engine.tracker.abandon(completion_id, payload.issues).to_dict()


@router.get("/{completion_id}/audit", response_class=JSONResponse)
def completion_audit(completion_id: str, engine: SOPEngine = Depends(get_engine)):
    return list_audit(engine.store.db_path, "completion", completion_id)
