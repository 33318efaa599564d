from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...engine import SOPEngine
from ...models import Template
from ..db import get_engine
from ..schemas import TemplateCreate, TemplateInstantiate

router = APIRouter(prefix="/templates")


@router.get("", response_class=JSONResponse)
def list_templates(limit: int = 20, engine: SOPEngine = Depends(get_engine)):
    return [t.to_dict() for t in engine.store.list_templates(limit)]


@router.post("", response_class=JSONResponse, status_code=201)
def create_template(payload: TemplateCreate, engine: SOPEngine = Depends(get_engine)):
    data = payload.model_dump(mode="json")
    # Templates are versionless blueprints: steps carry no ids
    data["steps"] = [
        {k: v for k, v in step.items() if k != "id"} for step in data["steps"]
    ]
    template = engine.store.create_template(Template.from_dict({**data, "id": ""}))
    return template.to_dict()


@router.post("/{template_id}/instantiate", response_class=JSONResponse, status_code=201)
def instantiate_template(
    template_id: str,
    payload: TemplateInstantiate,
    engine: SOPEngine = Depends(get_engine),
):
    procedure = engine.store.instantiate_template(
        template_id,
        payload.context_id,
        created_by=payload.created_by,
        name=payload.name,
        assignable_members=payload.assignable_members,
        default_assignee=payload.default_assignee,
    )
    return procedure.to_dict()
