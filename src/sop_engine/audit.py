import json
import logging
from datetime import datetime, timezone

from .db import _connect

logger = logging.getLogger("sop_engine.audit")


def _record_procedure_audit(
    db_path: str, procedure_id: str, action: str, before=None, after=None
):
    try:
        conn = _connect(db_path)
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO procedure_audit (procedure_id, action, before_json, after_json, performed_at) VALUES (?,?,?,?,?)",
            (
                procedure_id,
                action,
                json.dumps(before) if before else None,
                json.dumps(after) if after else None,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        conn.close()
    except Exception as e:
        logger.warning("Failed recording procedure audit: %s", e)


def _record_completion_audit(
    db_path: str,
    completion_id: str,
    procedure_id: str,
    action: str,
    before=None,
    after=None,
):
    try:
        conn = _connect(db_path)
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO completion_audit (completion_id, procedure_id, action, before_json, after_json, performed_at) VALUES (?,?,?,?,?,?)",
            (
                completion_id,
                procedure_id,
                action,
                json.dumps(before) if before else None,
                json.dumps(after) if after else None,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        conn.close()
    except Exception as e:
        logger.warning("Failed recording completion audit: %s", e)


def list_audit(db_path: str, entity: str, entity_id: str):
    table, key = {
        "procedure": ("procedure_audit", "procedure_id"),
        "completion": ("completion_audit", "completion_id"),
    }[entity]
    conn = _connect(db_path)
    cur = conn.cursor()
    cur.execute(
        f"SELECT id, action, before_json, after_json, performed_at FROM {table} WHERE {key}=? ORDER BY id",
        (entity_id,),
    )
    rows = [
        {
            "id": r[0],
            "action": r[1],
            "before": json.loads(r[2]) if r[2] else None,
            "after": json.loads(r[3]) if r[3] else None,
            "performed_at": r[4],
        }
        for r in cur.fetchall()
    ]
    conn.close()
    return rows
