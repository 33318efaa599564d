import io

import pandas as pd
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ...engine import SOPEngine
from ..db import get_engine

router = APIRouter(prefix="/procedures/{procedure_id}/history")

HISTORY_COLUMNS = [
    "id",
    "procedure_version",
    "scheduled_date",
    "scheduled_time",
    "assigned_to",
    "completed_by",
    "status",
    "started_at",
    "completed_at",
    "actual_duration",
    "completed_steps",
    "skipped_steps",
    "rating",
    "completion_notes",
    "issues",
    "suggestions",
]


def _history_frame(engine: SOPEngine, procedure_id: str) -> pd.DataFrame:
    engine.store.get_procedure(procedure_id)
    rows = []
    for c in engine.store.list_completions(procedure_id=procedure_id):
        data = c.to_dict()
        data["completed_steps"] = len(c.completed_steps)
        data["skipped_steps"] = len(c.skipped_steps)
        rows.append({k: data.get(k) for k in HISTORY_COLUMNS})
    df = pd.DataFrame(rows)
    if df.empty:
        df = pd.DataFrame(columns=HISTORY_COLUMNS)
    return df


@router.get("/export/xlsx")
def export_history_xlsx(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    df = _history_frame(engine, procedure_id)
    bio = io.BytesIO()
    with pd.ExcelWriter(bio, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="History")
    bio.seek(0)
    filename = f"procedure_{procedure_id}_history.xlsx"
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/export/csv")
def export_history_csv(procedure_id: str, engine: SOPEngine = Depends(get_engine)):
    df = _history_frame(engine, procedure_id)
    buf = io.StringIO()
    df.to_csv(buf, index=False)
    buf.seek(0)
    filename = f"procedure_{procedure_id}_history.csv"
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
