from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...audit import list_audit
from ...engine import SOPEngine
from ...models import Procedure
from ..db import get_engine
from ..schemas import ProcedureCreate, ProcedureUpdate, ScheduleWindow

router = APIRouter(prefix="/procedures")


@router.get("", response_class=JSONResponse)
def list_procedures(
    context_id: Optional[str] = None,
    include_archived: bool = False,
    category: Optional[str] = None,
    engine: SOPEngine = Depends(get_engine),
):
    return [
        p.to_dict()
        for p in engine.store.list_procedures(context_id, include_archived, category)
    ]


@router.get("/embeddable", response_class=JSONResponse)
def list_embeddable(context_id: str, engine: SOPEngine = Depends(get_engine)):
    return [p.to_dict() for p in engine.store.list_embeddable(context_id)]


@router.post("", response_class=JSONResponse, status_code=201)
def create_procedure(payload: ProcedureCreate, engine: SOPEngine = Depends(get_engine)):
    procedure = Procedure.from_dict({**payload.model_dump(mode="json"), "id": ""})
    return engine.store.create_procedure(procedure).to_dict()


@router.get("/{procedure_id}", response_class=JSONResponse)
def get_procedure(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    return engine.store.get_procedure(procedure_id).to_dict()


@router.patch("/{procedure_id}", response_class=JSONResponse)
def update_procedure(
    procedure_id: str, payload: ProcedureUpdate, engine: SOPEngine = Depends(get_engine)
):
    changes = payload.model_dump(mode="json", exclude_unset=True)
    before_version = engine.store.get_procedure(procedure_id).version
    updated = engine.store.update_procedure(procedure_id, changes)
    return {**updated.to_dict(), "version_bumped": updated.version != before_version}


@router.post("/{procedure_id}/archive", response_class=JSONResponse)
def archive_procedure(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    return engine.store.archive_procedure(procedure_id).to_dict()


@router.delete("/{procedure_id}", response_class=JSONResponse)
def delete_procedure(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    engine.store.delete_procedure(procedure_id)
    return {"deleted": True, "id": procedure_id}


@router.get("/{procedure_id}/versions", response_class=JSONResponse)
def list_versions(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    engine.store.get_procedure(procedure_id)
    return {"id": procedure_id, "versions": engine.store.list_versions(procedure_id)}


@router.get("/{procedure_id}/versions/{version}", response_class=JSONResponse)
def get_version(procedure_id: str, version: int, engine: SOPEngine = Depends(get_engine)):
    return engine.store.get_procedure(procedure_id, version=version).to_dict()


@router.get("/{procedure_id}/resolved", response_class=JSONResponse)
def get_resolved(
    procedure_id: str,
    context_id: Optional[str] = None,
    version: Optional[int] = None,
    engine: SOPEngine = Depends(get_engine),
):
    resolved = engine.resolve(procedure_id, context_id=context_id, version=version)
    return {
        "procedure_id": procedure_id,
        "version": resolved.procedure.version,
        "execution_order": resolved.procedure.execution_order.value,
        "total_duration": resolved.total_duration,
        "steps": [s.to_dict() for s in resolved.steps],
    }


@router.get("/{procedure_id}/work-item", response_class=JSONResponse)
def get_work_item(
    procedure_id: str,
    assignee: Optional[str] = None,
    engine: SOPEngine = Depends(get_engine),
):
    return engine.work_item(procedure_id, assignee).to_dict()


@router.get("/{procedure_id}/occurrences/preview", response_class=JSONResponse)
def preview_occurrences(
    procedure_id: str, start: date, end: date, engine: SOPEngine = Depends(get_engine)
):
    return [o.to_dict() for o in engine.scheduler.preview(procedure_id, start, end)]


@router.post("/{procedure_id}/schedule", response_class=JSONResponse, status_code=201)
def schedule_procedure(
    procedure_id: str, window: ScheduleWindow, engine: SOPEngine = Depends(get_engine)
):
    created = engine.scheduler.schedule(procedure_id, window.start, window.end)
    return {"created": len(created), "completions": [c.to_dict() for c in created]}


@router.get("/{procedure_id}/analytics", response_class=JSONResponse)
def get_analytics(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    procedure = engine.store.get_procedure(procedure_id)
    return procedure.to_dict()["analytics"]


@router.post("/{procedure_id}/analytics/rebuild", response_class=JSONResponse)
def rebuild_analytics(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    engine.store.get_procedure(procedure_id)
    summary = engine.aggregator.rebuild(procedure_id)
    return {
        "average_completion_time": summary.average_completion_time,
        "completion_rate": summary.completion_rate,
        "last_optimized": summary.last_optimized.isoformat(),
    }


@router.get("/{procedure_id}/audit", response_class=JSONResponse)
def procedure_audit(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    return list_audit(engine.store.db_path, "procedure", procedure_id)
