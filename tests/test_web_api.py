import csv
import io
import uuid

from fastapi.testclient import TestClient

from sop_engine.web.app import app

client = TestClient(app)


def _ctx():
    # Each test works in its own context so the shared session database never leaks
    return f"ctx-{uuid.uuid4().hex[:8]}"


def _create(ctx, name, steps, **extra):
    r = client.post(
        "/procedures", json={"context_id": ctx, "name": name, "steps": steps, **extra}
    )
    assert r.status_code == 201, r.text
    return r.json()


def _std(title, minutes, **extra):
    return {"title": title, "estimated_duration": minutes, **extra}


def _embed(target_id, **overrides):
    return {
        "title": "Embedded",
        "type": "embedded_sop",
        "embedded_procedure_id": target_id,
        "overrides": overrides,
    }


def test_root():
    r = client.get("/")
    assert r.status_code == 200
    assert "SOP Engine" in r.json()["message"]


def test_create_and_resolve_embedding():
    ctx = _ctx()
    b = _create(
        ctx,
        "B",
        [
            _std("B.S1", 10, id="B.S1"),
            _std("B.S2", 10, id="B.S2"),
            _std("B.S3", 20, id="B.S3"),
        ],
    )
    a = _create(
        ctx,
        "A",
        [_std("S1", 5, id="S1"), {**_embed(b["id"], skip_steps=["B.S2"]), "id": "E1"}],
    )
    assert a["embedded_procedures"] == [b["id"]]
    assert a["estimated_duration"] == 45
    r = client.get(f"/procedures/{a['id']}/resolved")
    assert r.status_code == 200
    body = r.json()
    assert [s["origin_step_id"] for s in body["steps"]] == ["S1", "B.S1", "B.S3"]
    assert [s["parent_step_id"] for s in body["steps"]] == [None, "E1", "E1"]
    assert body["total_duration"] == 35
    # Context scoping
    assert client.get(f"/procedures/{a['id']}/resolved?context_id=other").status_code == 404


def test_cycle_rejected_with_conflict():
    ctx = _ctx()
    a = _create(ctx, "A", [_std("one", 1)])
    b = _create(ctx, "B", [_embed(a["id"])])
    r = client.patch(f"/procedures/{a['id']}", json={"steps": [_embed(b["id"])]})
    assert r.status_code == 409
    assert r.json()["error"] == "CompositionCycle"
    assert client.get(f"/procedures/{a['id']}").json()["version"] == 1


def test_missing_procedure_is_404():
    r = client.get("/procedures/does-not-exist")
    assert r.status_code == 404
    assert r.json()["error"] == "ProcedureNotFound"


def test_unknown_category_is_unprocessable():
    r = client.post(
        "/procedures", json={"context_id": _ctx(), "name": "Bad", "category": "bogus"}
    )
    assert r.status_code == 422
    assert r.json()["error"] == "InvalidValue"


def test_patch_reports_version_bump_and_versions_listing():
    ctx = _ctx()
    p = _create(ctx, "Evening", [_std("Dishes", 15)])
    r = client.patch(f"/procedures/{p['id']}", json={"description": "after dinner"})
    assert r.json()["version_bumped"] is False
    r = client.patch(
        f"/procedures/{p['id']}",
        json={"steps": [_std("Dishes", 15), _std("Wipe counters", 5)]},
    )
    assert r.json()["version_bumped"] is True
    assert r.json()["version"] == 2
    assert client.get(f"/procedures/{p['id']}/versions").json()["versions"] == [1, 2]
    v1 = client.get(f"/procedures/{p['id']}/versions/1").json()
    assert len(v1["steps"]) == 1
    actions = [row["action"] for row in client.get(f"/procedures/{p['id']}/audit").json()]
    assert actions == ["create", "update", "update"]


def test_completion_lifecycle_over_http():
    ctx = _ctx()
    p = _create(ctx, "Morning", [_std("Wake", 5, id="W"), _std("Dress", 5, id="D")])
    r = client.post(
        "/completions",
        json={"procedure_id": p["id"], "scheduled_date": "2025-01-06", "scheduled_time": "07:00"},
    )
    assert r.status_code == 201
    cid = r.json()["id"]

    r = client.post(f"/completions/{cid}/finish", json={})
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidTransition"

    assert client.post(f"/completions/{cid}/start").json()["status"] == "in-progress"
    r = client.post(f"/completions/{cid}/steps/complete", json={"step_id": "nope"})
    assert r.status_code == 422
    assert r.json()["error"] == "UnknownStep"
    r = client.post(
        f"/completions/{cid}/steps/complete", json={"step_id": "W", "procedure_version": 2}
    )
    assert r.status_code == 409
    assert r.json()["error"] == "StaleVersion"

    client.post(f"/completions/{cid}/steps/complete", json={"step_id": "W"})
    avail = client.get(f"/completions/{cid}/available-steps").json()
    assert [s["id"] for s in avail] == ["D"]
    client.post(f"/completions/{cid}/steps/skip", json={"step_id": "D", "note": "late"})
    r = client.post(f"/completions/{cid}/finish", json={"completed_by": "alex", "rating": 5})
    assert r.status_code == 200
    done = r.json()
    assert done["status"] == "completed"
    assert done["completed_steps"] == ["W"]
    assert done["skipped_steps"] == ["D"]
    assert done["step_notes"] == {"D": "late"}

    analytics = client.get(f"/procedures/{p['id']}/analytics").json()
    assert analytics["completion_rate"] == 1.0
    assert analytics["last_optimized"] is not None

    actions = [row["action"] for row in client.get(f"/completions/{cid}/audit").json()]
    assert actions == ["create", "start", "complete_step", "skip_step", "finish"]


def test_invalid_rating_is_unprocessable():
    ctx = _ctx()
    p = _create(ctx, "Chore", [_std("Do it", 5)])
    cid = client.post(
        "/completions", json={"procedure_id": p["id"], "scheduled_date": "2025-01-06"}
    ).json()["id"]
    client.post(f"/completions/{cid}/start")
    r = client.post(f"/completions/{cid}/finish", json={"rating": 9})
    assert r.status_code == 422


def test_schedule_calendar_and_reschedule():
    ctx = _ctx()
    p = _create(
        ctx,
        "School run",
        [_std("Drive", 20)],
        category="leaving",
        is_recurring=True,
        recurrence={"frequency": "weekly", "days_of_week": [1, 3, 5], "time_of_day": "07:30"},
    )
    preview = client.get(
        f"/procedures/{p['id']}/occurrences/preview?start=2025-01-05&end=2025-01-18"
    ).json()
    assert len(preview) == 6
    r = client.post(
        f"/procedures/{p['id']}/schedule", json={"start": "2025-01-05", "end": "2025-01-18"}
    )
    assert r.status_code == 201
    assert r.json()["created"] == 6
    again = client.post(
        f"/procedures/{p['id']}/schedule", json={"start": "2025-01-05", "end": "2025-01-18"}
    )
    assert again.json()["created"] == 0

    items = client.get(f"/calendar?context_id={ctx}&start=2025-01-05&end=2025-01-11").json()
    assert [i["date"] for i in items] == ["2025-01-06", "2025-01-08", "2025-01-10"]
    assert items[0]["end_time"] == "07:50"
    assert items[0]["color"] == "#EF4444"

    cid = items[0]["completion_id"]
    r = client.patch(f"/calendar/{cid}", json={"scheduled_date": "2025-01-07", "scheduled_time": "08:00"})
    assert r.status_code == 200
    assert r.json()["date"] == "2025-01-07"
    assert r.json()["start_time"] == "08:00"
    r = client.patch(f"/calendar/{cid}", json={"scheduled_date": "2025-01-08"})
    assert r.status_code == 409
    assert r.json()["error"] == "DuplicateOccurrence"


def test_archived_procedure_not_schedulable():
    ctx = _ctx()
    p = _create(
        ctx,
        "Old",
        [_std("x", 1)],
        is_recurring=True,
        recurrence={"frequency": "daily"},
    )
    assert client.post(f"/procedures/{p['id']}/archive").json()["status"] == "archived"
    r = client.post(
        f"/procedures/{p['id']}/schedule", json={"start": "2025-01-01", "end": "2025-01-03"}
    )
    assert r.status_code == 409
    assert r.json()["error"] == "ProcedureNotSchedulable"
    listed = client.get(f"/procedures?context_id={ctx}").json()
    assert listed == []


def test_templates_round_trip():
    ctx = _ctx()
    r = client.post(
        "/templates",
        json={
            "name": f"Laundry {ctx}",
            "category": "cleanup",
            "steps": [_std("Sort", 5, id="ignored"), _std("Wash", 40)],
        },
    )
    assert r.status_code == 201
    tpl = r.json()
    assert all("id" not in s for s in tpl["steps"])
    r = client.post(f"/templates/{tpl['id']}/instantiate", json={"context_id": ctx})
    assert r.status_code == 201
    proc = r.json()
    assert proc["context_id"] == ctx
    assert proc["estimated_duration"] == 45
    assert [s["title"] for s in proc["steps"]] == ["Sort", "Wash"]
    assert client.post("/templates/missing/instantiate", json={"context_id": ctx}).status_code == 404


def test_work_item_endpoint():
    ctx = _ctx()
    p = _create(ctx, "Bedtime", [_std("Brush", 3)], category="evening")
    item = client.get(f"/procedures/{p['id']}/work-item?assignee=kid").json()
    assert item["title"] == "Bedtime"
    assert item["assignee"] == "kid"
    assert "Brush [3 min]" in item["context"]


def test_history_exports():
    ctx = _ctx()
    p = _create(ctx, "Export me", [_std("Only", 5)])
    client.post("/completions", json={"procedure_id": p["id"], "scheduled_date": "2025-01-06"})
    resp = client.get(f"/procedures/{p['id']}/history/export/xlsx")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith(
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )
    assert len(resp.content) > 1000
    resp = client.get(f"/procedures/{p['id']}/history/export/csv")
    assert resp.status_code == 200
    rows = list(csv.DictReader(io.StringIO(resp.text)))
    assert len(rows) == 1
    assert rows[0]["status"] == "scheduled"
    assert client.get("/procedures/missing/history/export/csv").status_code == 404


def test_list_item_routes():
    ctx = _ctx()
    p = _create(
        ctx,
        "Leaving",
        [
            _std(
                "Pack",
                5,
                id="PACK",
                type="list",
                list_items=[{"id": "keys", "text": "Keys"}, {"id": "wallet", "text": "Wallet"}],
            )
        ],
    )
    cid = client.post(
        "/completions", json={"procedure_id": p["id"], "scheduled_date": "2025-01-06"}
    ).json()["id"]
    client.post(f"/completions/{cid}/start")
    r = client.post(
        f"/completions/{cid}/list-items/complete", json={"step_id": "PACK", "item_id": "keys"}
    )
    assert r.status_code == 200
    assert r.json()["completed_list_items"] == {"PACK": ["keys"]}
    r = client.post(
        f"/completions/{cid}/list-items/complete", json={"step_id": "PACK", "item_id": "phone"}
    )
    assert r.status_code == 422
    assert r.json()["error"] == "UnknownListItem"
    r = client.post(
        f"/completions/{cid}/list-items/uncomplete", json={"step_id": "PACK", "item_id": "keys"}
    )
    assert r.json()["completed_list_items"] == {}
    actions = [row["action"] for row in client.get(f"/completions/{cid}/audit").json()]
    assert actions == ["create", "start", "complete_list_item", "uncomplete_list_item"]


def test_delete_with_history_is_refused():
    ctx = _ctx()
    p = _create(ctx, "Keep me", [_std("Only", 5)])
    client.post("/completions", json={"procedure_id": p["id"], "scheduled_date": "2025-01-06"})
    r = client.delete(f"/procedures/{p['id']}")
    assert r.status_code == 409
    assert r.json()["error"] == "ProcedureInUse"
    assert client.get(f"/procedures/{p['id']}").status_code == 200

    unused = _create(ctx, "Scratch", [_std("Only", 5)])
    r = client.delete(f"/procedures/{unused['id']}")
    assert r.status_code == 200
    assert client.get(f"/procedures/{unused['id']}").status_code == 404


def test_conflict_check_endpoint():
    ctx = _ctx()
    p = _create(ctx, "Breakfast", [_std("Cook", 30)], category="meal-prep")
    cid = client.post(
        "/completions",
        json={
            "procedure_id": p["id"],
            "scheduled_date": "2025-01-06",
            "scheduled_time": "07:00",
            "assigned_to": "alex",
        },
    ).json()["id"]
    params = {"context_id": ctx, "day": "2025-01-06", "start_time": "07:15", "duration": 20}
    body = client.get("/calendar/conflicts", params={**params, "assignee": "alex"}).json()
    conflict = body["conflict"]
    assert conflict["date"] == "2025-01-06"
    assert [i["completion_id"] for i in conflict["conflicting"]] == [cid]
    assert len(conflict["suggestions"]) == 3
    free = client.get("/calendar/conflicts", params={**params, "assignee": "sam"}).json()
    assert free == {"conflict": None}
    moved = client.get(
        "/calendar/conflicts", params={**params, "exclude_completion_id": cid}
    ).json()
    assert moved == {"conflict": None}
