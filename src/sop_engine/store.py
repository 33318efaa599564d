"""SQLite-backed record store for procedures, completions and templates.

Records are stored as JSON documents next to the few columns queries filter
on. Every call opens its own connection; completion read-modify-writes run
inside ``BEGIN IMMEDIATE`` so concurrent updates of one completion serialize.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config
from .audit import _record_completion_audit, _record_procedure_audit
from .composition import top_level_duration, validate_procedure
from .db import _connect, _init_db, transaction
from .errors import (
    CompletionNotFound,
    DuplicateOccurrence,
    ProcedureInUse,
    ProcedureNotFound,
    TemplateNotFound,
)
from .models import (
    STRUCTURAL_FIELDS,
    AnalyticsSummary,
    Completion,
    Procedure,
    ProcedureStatus,
    Step,
    Template,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:12]}"


class SQLiteStore:
    def __init__(self, db_path: Optional[str] = None, initialize: bool = True):
        self.db_path = db_path or config.get_db_path()
        if initialize:
            _init_db(self.db_path)

    def _connect(self):
        return _connect(self.db_path)

    # --------------------- procedures ---------------------

    def _prepare(self, procedure: Procedure) -> Procedure:
        for idx, step in enumerate(procedure.steps, start=1):
            if not step.id:
                step.id = new_step_id()
            if not step.step_number:
                step.step_number = idx
        procedure.embedded_procedures = procedure.embedded_ids()
        validate_procedure(procedure, self.get_procedure)
        procedure.estimated_duration = top_level_duration(procedure, self.get_procedure)
        return procedure

    def create_procedure(self, procedure: Procedure) -> Procedure:
        procedure.id = procedure.id or new_id()
        procedure.version = 1
        procedure.created_at = procedure.updated_at = _now()
        self._prepare(procedure)
        data = procedure.to_dict()
        conn = self._connect()
        try:
            with transaction(conn):
                conn.execute(
                    """INSERT INTO procedure (id,context_id,name,category,status,version,data_json,created_at,updated_at)
                        VALUES (?,?,?,?,?,?,?,?,?)""",
                    (
                        procedure.id,
                        procedure.context_id,
                        procedure.name,
                        procedure.category.value,
                        procedure.status.value,
                        procedure.version,
                        json.dumps(data),
                        data["created_at"],
                        data["updated_at"],
                    ),
                )
                self._snapshot(conn, procedure, data)
        finally:
            conn.close()
        logger.info("Created procedure %s (%s)", procedure.id, procedure.name)
        _record_procedure_audit(self.db_path, procedure.id, "create", after=data)
        return procedure

    def _snapshot(self, conn, procedure: Procedure, data: Dict[str, Any]):
        conn.execute(
            "INSERT INTO procedure_version (procedure_id, version, snapshot_json, created_at) VALUES (?,?,?,?)",
            (procedure.id, procedure.version, json.dumps(data), data["updated_at"]),
        )

    def get_procedure(
        self, procedure_id: str, version: Optional[int] = None
    ) -> Procedure:
        conn = self._connect()
        cur = conn.cursor()
        if version is None:
            cur.execute("SELECT data_json FROM procedure WHERE id=?", (procedure_id,))
        else:
            cur.execute(
                "SELECT snapshot_json FROM procedure_version WHERE procedure_id=? AND version=?",
                (procedure_id, version),
            )
        row = cur.fetchone()
        conn.close()
        if not row:
            raise ProcedureNotFound(procedure_id, version)
        return Procedure.from_dict(json.loads(row[0]))

    def list_versions(self, procedure_id: str) -> List[int]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT version FROM procedure_version WHERE procedure_id=? ORDER BY version",
            (procedure_id,),
        )
        versions = [r[0] for r in cur.fetchall()]
        conn.close()
        return versions

    def list_procedures(
        self,
        context_id: Optional[str] = None,
        include_archived: bool = False,
        category: Optional[str] = None,
    ) -> List[Procedure]:
        sql = "SELECT data_json FROM procedure WHERE 1=1"
        params: List[Any] = []
        if context_id is not None:
            sql += " AND context_id=?"
            params.append(context_id)
        if not include_archived:
            sql += " AND status != ?"
            params.append(ProcedureStatus.ARCHIVED.value)
        if category is not None:
            sql += " AND category=?"
            params.append(category)
        sql += " ORDER BY status, category, name"
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(sql, params)
        rows = [Procedure.from_dict(json.loads(r[0])) for r in cur.fetchall()]
        conn.close()
        return rows

    def list_embeddable(self, context_id: str) -> List[Procedure]:
        return [
            p
            for p in self.list_procedures(context_id)
            if p.can_be_embedded and p.status == ProcedureStatus.ACTIVE
        ]

    def update_procedure(self, procedure_id: str, changes: Dict[str, Any]) -> Procedure:
        """Apply field changes; structural edits bump the version and snapshot it."""
        conn = self._connect()
        try:
            with transaction(conn):
                cur = conn.execute(
                    "SELECT data_json FROM procedure WHERE id=?", (procedure_id,)
                )
                row = cur.fetchone()
                if not row:
                    raise ProcedureNotFound(procedure_id)
                before = Procedure.from_dict(json.loads(row[0]))
                before_data = before.to_dict()
                merged = dict(before_data)
                for key, value in changes.items():
                    if key in ("id", "version", "created_at", "created_by", "analytics"):
                        continue
                    merged[key] = value
                updated = Procedure.from_dict(merged)
                updated_data = updated.to_dict()
                structural = any(
                    json.dumps(updated_data.get(f), sort_keys=True)
                    != json.dumps(before_data.get(f), sort_keys=True)
                    for f in STRUCTURAL_FIELDS
                )
                if structural:
                    updated.version = before.version + 1
                updated.updated_at = _now()
                self._prepare(updated)
                data = updated.to_dict()
                conn.execute(
                    """UPDATE procedure SET context_id=?, name=?, category=?, status=?, version=?, data_json=?, updated_at=?
                        WHERE id=?""",
                    (
                        updated.context_id,
                        updated.name,
                        updated.category.value,
                        updated.status.value,
                        updated.version,
                        json.dumps(data),
                        data["updated_at"],
                        procedure_id,
                    ),
                )
                if structural:
                    self._snapshot(conn, updated, data)
        finally:
            conn.close()
        updated_fields = [
            k for k in data if k != "updated_at" and data.get(k) != before_data.get(k)
        ]
        logger.info(
            "Updated procedure %s fields=%s version=%s",
            procedure_id,
            updated_fields,
            updated.version,
        )
        _record_procedure_audit(
            self.db_path,
            procedure_id,
            "update",
            before=before_data,
            after={**data, "updated_fields": updated_fields},
        )
        return updated

    def archive_procedure(self, procedure_id: str) -> Procedure:
        procedure = self.update_procedure(
            procedure_id, {"status": ProcedureStatus.ARCHIVED.value}
        )
        _record_procedure_audit(self.db_path, procedure_id, "archive")
        return procedure

    def delete_procedure(self, procedure_id: str) -> None:
        """Hard delete; refused while completions still reference the procedure."""
        before = self.get_procedure(procedure_id)
        conn = self._connect()
        try:
            with transaction(conn):
                cur = conn.execute(
                    "SELECT COUNT(*) FROM completion WHERE procedure_id=?", (procedure_id,)
                )
                in_use = cur.fetchone()[0]
                if in_use:
                    raise ProcedureInUse(procedure_id, in_use)
                conn.execute("DELETE FROM procedure WHERE id=?", (procedure_id,))
                conn.execute(
                    "DELETE FROM procedure_version WHERE procedure_id=?", (procedure_id,)
                )
        finally:
            conn.close()
        _record_procedure_audit(
            self.db_path, procedure_id, "delete", before=before.to_dict()
        )

    def get_analytics_state(self, procedure_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT analytics_state_json FROM procedure WHERE id=?", (procedure_id,)
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            raise ProcedureNotFound(procedure_id)
        return json.loads(row[0]) if row[0] else None

    def mutate_analytics(
        self,
        procedure_id: str,
        fold: Callable[[Optional[dict]], Tuple[AnalyticsSummary, dict]],
    ) -> AnalyticsSummary:
        """Atomic read-fold-write of a procedure's analytics state.

        ``fold`` receives the stored state (or None) and returns the new summary
        and state. Version and structure are left untouched.
        """
        conn = self._connect()
        try:
            with transaction(conn):
                cur = conn.execute(
                    "SELECT data_json, analytics_state_json FROM procedure WHERE id=?",
                    (procedure_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise ProcedureNotFound(procedure_id)
                summary, state = fold(json.loads(row[1]) if row[1] else None)
                data = json.loads(row[0])
                data["analytics"] = {
                    "average_completion_time": summary.average_completion_time,
                    "completion_rate": summary.completion_rate,
                    "last_optimized": summary.last_optimized.isoformat()
                    if summary.last_optimized
                    else None,
                }
                conn.execute(
                    "UPDATE procedure SET data_json=?, analytics_state_json=? WHERE id=?",
                    (json.dumps(data), json.dumps(state), procedure_id),
                )
        finally:
            conn.close()
        return summary

    # --------------------- completions ---------------------

    def insert_completion(self, completion: Completion) -> Completion:
        completion.id = completion.id or new_id()
        completion.created_at = completion.updated_at = _now()
        completion.row_version = 0
        data = completion.to_dict()
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO completion (id,procedure_id,context_id,scheduled_date,assigned_to,status,row_version,data_json,created_at,updated_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?)""",
                (
                    completion.id,
                    completion.procedure_id,
                    completion.context_id,
                    data["scheduled_date"],
                    completion.assigned_to,
                    data["status"],
                    0,
                    json.dumps(data),
                    data["created_at"],
                    data["updated_at"],
                ),
            )
        except sqlite3.IntegrityError:
            raise DuplicateOccurrence(
                completion.procedure_id, data["scheduled_date"], completion.assigned_to
            ) from None
        finally:
            conn.close()
        _record_completion_audit(
            self.db_path, completion.id, completion.procedure_id, "create", after=data
        )
        return completion

    def get_completion(self, completion_id: str) -> Completion:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT data_json, row_version FROM completion WHERE id=?", (completion_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            raise CompletionNotFound(completion_id)
        return Completion.from_dict({**json.loads(row[0]), "row_version": row[1]})

    def list_completions(
        self,
        procedure_id: Optional[str] = None,
        context_id: Optional[str] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: Optional[str] = None,
    ) -> List[Completion]:
        sql = "SELECT data_json, row_version FROM completion WHERE 1=1"
        params: List[Any] = []
        if procedure_id is not None:
            sql += " AND procedure_id=?"
            params.append(procedure_id)
        if context_id is not None:
            sql += " AND context_id=?"
            params.append(context_id)
        if start is not None:
            sql += " AND scheduled_date>=?"
            params.append(start.isoformat())
        if end is not None:
            sql += " AND scheduled_date<=?"
            params.append(end.isoformat())
        if status is not None:
            sql += " AND status=?"
            params.append(status)
        sql += " ORDER BY scheduled_date, created_at"
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(sql, params)
        rows = [
            Completion.from_dict({**json.loads(r[0]), "row_version": r[1]})
            for r in cur.fetchall()
        ]
        conn.close()
        return rows

    def mutate_completion(
        self,
        completion_id: str,
        mutate: Callable[[Completion], Optional[str]],
    ) -> Completion:
        """Atomic read-modify-write of one completion.

        ``mutate`` edits the record in place and returns the audit action name;
        any exception it raises rolls the transaction back untouched.
        """
        conn = self._connect()
        try:
            with transaction(conn):
                cur = conn.execute(
                    "SELECT data_json, row_version FROM completion WHERE id=?",
                    (completion_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise CompletionNotFound(completion_id)
                before = json.loads(row[0])
                completion = Completion.from_dict({**before, "row_version": row[1]})
                action = mutate(completion)
                completion.updated_at = _now()
                completion.row_version = row[1] + 1
                data = completion.to_dict()
                try:
                    conn.execute(
                        """UPDATE completion SET scheduled_date=?, assigned_to=?, status=?, row_version=?, data_json=?, updated_at=?
                            WHERE id=? AND row_version=?""",
                        (
                            data["scheduled_date"],
                            completion.assigned_to,
                            data["status"],
                            completion.row_version,
                            json.dumps(data),
                            data["updated_at"],
                            completion_id,
                            row[1],
                        ),
                    )
                except sqlite3.IntegrityError:
                    raise DuplicateOccurrence(
                        completion.procedure_id,
                        data["scheduled_date"],
                        completion.assigned_to,
                    ) from None
        finally:
            conn.close()
        _record_completion_audit(
            self.db_path,
            completion_id,
            completion.procedure_id,
            action or "update",
            before=before,
            after=data,
        )
        return completion

    # --------------------- templates ---------------------

    def create_template(self, template: Template) -> Template:
        template.id = template.id or new_id()
        template.created_at = template.created_at or _now()
        template.estimated_duration = sum(
            s.get("estimated_duration") or 0 for s in template.steps
        )
        data = template.to_dict()
        conn = self._connect()
        conn.execute(
            "INSERT INTO template (id,name,is_public,usage_count,rating,data_json,created_at) VALUES (?,?,?,?,?,?,?)",
            (
                template.id,
                template.name,
                1 if template.is_public else 0,
                template.usage_count,
                template.rating,
                json.dumps(data),
                data["created_at"],
            ),
        )
        conn.close()
        return template

    def get_template(self, template_id: str) -> Template:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT data_json, usage_count FROM template WHERE id=?", (template_id,)
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            raise TemplateNotFound(template_id)
        return _template_from_row(row)

    def list_templates(self, limit: int = 20) -> List[Template]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT data_json, usage_count FROM template WHERE is_public=1 ORDER BY usage_count DESC, rating DESC LIMIT ?",
            (limit,),
        )
        rows = [_template_from_row(r) for r in cur.fetchall()]
        conn.close()
        return rows

    def instantiate_template(
        self,
        template_id: str,
        context_id: str,
        created_by: Optional[str] = None,
        name: Optional[str] = None,
        assignable_members: Optional[List[str]] = None,
        default_assignee: Optional[str] = None,
    ) -> Procedure:
        """Create an active procedure from a template and bump the template's usage."""
        template = self.get_template(template_id)
        steps = [
            Step.from_dict(
                {
                    **s,
                    "id": new_step_id(),
                    "step_number": idx,
                    "type": "standard",
                    "dependencies": [],
                }
            )
            for idx, s in enumerate(template.steps, start=1)
        ]
        procedure = Procedure(
            id="",
            context_id=context_id,
            name=name or template.name,
            steps=steps,
            description=template.description,
            category=template.category,
            tags=list(template.tags),
            difficulty=template.difficulty,
            status=ProcedureStatus.ACTIVE,
            assignable_members=list(assignable_members or []),
            default_assignee=default_assignee,
            created_by=created_by,
        )
        created = self.create_procedure(procedure)
        conn = self._connect()
        conn.execute(
            "UPDATE template SET usage_count = usage_count + 1 WHERE id=?",
            (template_id,),
        )
        conn.close()
        logger.info("Instantiated template %s as procedure %s", template_id, created.id)
        return created


def _template_from_row(row) -> Template:
    return Template.from_dict({**json.loads(row[0]), "usage_count": row[1]})
