import threading
from datetime import date, datetime, timezone

import pytest

from sop_engine.errors import (
    CompletionNotFound,
    ConfirmationRequired,
    DuplicateOccurrence,
    InvalidRating,
    InvalidTransition,
    ProcedureNotFound,
    ProcedureNotSchedulable,
    StaleVersion,
    UnknownListItem,
    UnknownStep,
)
from sop_engine.models import (
    CompletionStatus,
    EmbeddedOverrides,
    ExecutionOrder,
    ListItem,
    Procedure,
    Step,
    StepType,
)


def _procedure(engine, n_steps=3, **kw):
    steps = [
        Step(id=f"S{i}", step_number=i, title=f"Step {i}", estimated_duration=5)
        for i in range(1, n_steps + 1)
    ]
    return engine.store.create_procedure(
        Procedure(id="", context_id="home", name="Routine", steps=steps, **kw)
    )


def _occurrence(engine, proc, day=date(2025, 1, 6), **kw):
    return engine.tracker.create_occurrence(proc.id, day, scheduled_time="07:00", **kw)


def test_occurrence_pins_version_and_steps(engine):
    proc = _procedure(engine)
    c = _occurrence(engine, proc)
    assert c.status == CompletionStatus.SCHEDULED
    assert c.procedure_version == 1
    assert c.step_ids == ["S1", "S2", "S3"]
    assert c.row_version == 0


def test_happy_path_to_completed(engine):
    proc = _procedure(engine)
    c = _occurrence(engine, proc)
    c = engine.tracker.start(c.id, at=datetime(2025, 1, 6, 7, 0))
    assert c.status == CompletionStatus.IN_PROGRESS
    engine.tracker.complete_step(c.id, "S1")
    engine.tracker.skip_step(c.id, "S2", note="no coffee left")
    engine.tracker.complete_step(c.id, "S3")
    c = engine.tracker.finish(
        c.id, completed_by="alex", rating=4, at=datetime(2025, 1, 6, 7, 21, 30)
    )
    assert c.status == CompletionStatus.COMPLETED
    assert c.actual_duration == 21.5
    assert c.completed_steps == ["S1", "S3"]
    assert c.skipped_steps == ["S2"]
    assert c.step_notes == {"S2": "no coffee left"}
    assert c.completed_by == "alex"
    assert c.rating == 4
    assert c.row_version == 5


def test_finish_from_scheduled_is_rejected(engine):
    c = _occurrence(engine, _procedure(engine))
    with pytest.raises(InvalidTransition):
        engine.tracker.finish(c.id)
    assert engine.store.get_completion(c.id).status == CompletionStatus.SCHEDULED


def test_terminal_states_accept_nothing(engine):
    proc = _procedure(engine)
    skipped = engine.tracker.skip(_occurrence(engine, proc).id, reason="away")
    assert skipped.status == CompletionStatus.SKIPPED
    assert skipped.completion_notes == "away"
    for action in (
        lambda: engine.tracker.start(skipped.id),
        lambda: engine.tracker.skip(skipped.id),
        lambda: engine.tracker.abandon(skipped.id),
        lambda: engine.tracker.reschedule(skipped.id, date(2025, 2, 1)),
    ):
        with pytest.raises(InvalidTransition):
            action()


def test_step_events_require_in_progress(engine):
    c = _occurrence(engine, _procedure(engine))
    with pytest.raises(InvalidTransition):
        engine.tracker.complete_step(c.id, "S1")


def test_abandon_from_in_progress_records_issues(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id)
    c = engine.tracker.abandon(c.id, issues="power cut")
    assert c.status == CompletionStatus.FAILED
    assert c.issues == "power cut"


def test_unknown_step_leaves_record_unchanged(engine):
    c = _occurrence(engine, _procedure(engine))
    c = engine.tracker.start(c.id)
    with pytest.raises(UnknownStep):
        engine.tracker.complete_step(c.id, "S9")
    after = engine.store.get_completion(c.id)
    assert after.completed_steps == []
    assert after.row_version == c.row_version


def test_step_moves_between_completed_and_skipped(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id)
    engine.tracker.skip_step(c.id, "S1")
    c = engine.tracker.complete_step(c.id, "S1")
    assert c.completed_steps == ["S1"]
    assert c.skipped_steps == []
    c = engine.tracker.skip_step(c.id, "S1")
    assert c.completed_steps == []
    assert c.skipped_steps == ["S1"]
    c = engine.tracker.complete_step(c.id, "S1")
    c = engine.tracker.complete_step(c.id, "S1")
    assert c.completed_steps == ["S1"]


def test_note_step(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id)
    c = engine.tracker.note_step(c.id, "S2", "check the filter")
    assert c.step_notes == {"S2": "check the filter"}


def test_embedded_steps_use_path_ids(engine):
    inner = _procedure(engine, n_steps=2)
    outer = engine.store.create_procedure(
        Procedure(
            id="",
            context_id="home",
            name="Outer",
            steps=[
                Step(id="A", step_number=1, title="First", estimated_duration=3),
                Step(
                    id="E",
                    step_number=2,
                    title="Inner",
                    type=StepType.EMBEDDED,
                    embedded_procedure_id=inner.id,
                    overrides=EmbeddedOverrides(skip_steps=["S1"]),
                ),
            ],
        )
    )
    c = _occurrence(engine, outer)
    assert c.step_ids == ["A", "E/S2"]
    engine.tracker.start(c.id)
    c = engine.tracker.complete_step(c.id, "E/S2")
    assert c.completed_steps == ["E/S2"]


def test_confirmation_required(engine):
    c = _occurrence(engine, _procedure(engine, requires_confirmation=True))
    engine.tracker.start(c.id)
    with pytest.raises(ConfirmationRequired):
        engine.tracker.finish(c.id, completed_by="kid")
    with pytest.raises(ConfirmationRequired):
        engine.tracker.finish(c.id, confirmed_by="parent", automated=True)
    assert engine.store.get_completion(c.id).status == CompletionStatus.IN_PROGRESS
    c = engine.tracker.finish(c.id, completed_by="kid", confirmed_by="parent")
    assert c.status == CompletionStatus.COMPLETED
    assert c.confirmed_by == "parent"


def test_invalid_rating(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id)
    with pytest.raises(InvalidRating):
        engine.tracker.finish(c.id, rating=6)


def test_completion_stays_pinned_after_structural_edit(engine):
    proc = _procedure(engine)
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id)
    new_steps = [s.to_dict() for s in proc.steps] + [
        {"id": "S4", "step_number": 4, "title": "Step 4", "estimated_duration": 2}
    ]
    updated = engine.store.update_procedure(proc.id, {"steps": new_steps})
    assert updated.version == 2
    with pytest.raises(StaleVersion):
        engine.tracker.complete_step(c.id, "S1", procedure_version=2)
    with pytest.raises(UnknownStep):
        engine.tracker.complete_step(c.id, "S4")
    c = engine.tracker.complete_step(c.id, "S1", procedure_version=1)
    assert c.procedure_version == 1
    assert [s.id for s in engine.tracker.available_steps(c.id)] == ["S2"]
    fresh = _occurrence(engine, proc, day=date(2025, 1, 7))
    assert fresh.procedure_version == 2
    assert fresh.step_ids == ["S1", "S2", "S3", "S4"]


def test_available_steps_respects_parallel_dependencies(engine):
    proc = engine.store.create_procedure(
        Procedure(
            id="",
            context_id="home",
            name="Prep",
            execution_order=ExecutionOrder.PARALLEL,
            steps=[
                Step(id="S1", step_number=1, title="Boil", estimated_duration=10),
                Step(
                    id="S2",
                    step_number=2,
                    title="Pour",
                    estimated_duration=1,
                    dependencies=["S1"],
                ),
                Step(id="S3", step_number=3, title="Toast", estimated_duration=3),
            ],
        )
    )
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id)
    assert [s.id for s in engine.tracker.available_steps(c.id)] == ["S1", "S3"]
    engine.tracker.complete_step(c.id, "S1")
    assert [s.id for s in engine.tracker.available_steps(c.id)] == ["S2", "S3"]


def test_reschedule_moves_date_and_rejects_collisions(engine):
    proc = _procedure(engine)
    first = _occurrence(engine, proc, day=date(2025, 1, 6))
    second = _occurrence(engine, proc, day=date(2025, 1, 7))
    moved = engine.tracker.reschedule(first.id, date(2025, 1, 9), "09:15")
    assert moved.scheduled_date == date(2025, 1, 9)
    assert moved.scheduled_time == "09:15"
    assert moved.status == CompletionStatus.SCHEDULED
    with pytest.raises(DuplicateOccurrence):
        engine.tracker.reschedule(second.id, date(2025, 1, 9))
    assert engine.store.get_completion(second.id).scheduled_date == date(2025, 1, 7)


def test_reschedule_after_start_is_rejected(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id)
    with pytest.raises(InvalidTransition):
        engine.tracker.reschedule(c.id, date(2025, 1, 9))


def test_duplicate_occurrence_for_same_slot(engine):
    proc = _procedure(engine)
    _occurrence(engine, proc, assigned_to="alex")
    with pytest.raises(DuplicateOccurrence):
        _occurrence(engine, proc, assigned_to="alex")
    # Another assignee may hold the same date
    _occurrence(engine, proc, assigned_to="sam")


def test_archived_procedure_rejects_new_occurrences(engine):
    proc = _procedure(engine)
    engine.store.archive_procedure(proc.id)
    with pytest.raises(ProcedureNotSchedulable):
        _occurrence(engine, proc)


def test_missing_completion(engine):
    with pytest.raises(CompletionNotFound):
        engine.tracker.start("nope")


def test_concurrent_step_completions_are_not_lost(engine):
    proc = _procedure(engine, n_steps=8, execution_order=ExecutionOrder.PARALLEL)
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id)
    errors = []

    def worker(step_id):
        try:
            engine.tracker.complete_step(c.id, step_id)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [
        threading.Thread(target=worker, args=(f"S{i}",)) for i in range(1, 9)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    final = engine.store.get_completion(c.id)
    assert sorted(final.completed_steps) == [f"S{i}" for i in range(1, 9)]
    assert final.row_version == 1 + 8


def test_terminal_transitions_feed_analytics(engine):
    proc = _procedure(engine)
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id, at=datetime(2025, 1, 6, 7, 0))
    engine.tracker.finish(c.id, at=datetime(2025, 1, 6, 7, 20))
    engine.tracker.skip(_occurrence(engine, proc, day=date(2025, 1, 7)).id)
    analytics = engine.store.get_procedure(proc.id).analytics
    assert analytics.average_completion_time == 20.0
    assert analytics.completion_rate == 0.5
    assert analytics.last_optimized is not None
    # Analytics writes never bump the structural version
    assert engine.store.get_procedure(proc.id).version == 1


def _packing_list(engine):
    return engine.store.create_procedure(
        Procedure(
            id="",
            context_id="home",
            name="Leaving",
            steps=[
                Step(
                    id="PACK",
                    step_number=1,
                    title="Pack bag",
                    estimated_duration=5,
                    type=StepType.LIST,
                    list_items=[
                        ListItem(id="keys", text="Keys"),
                        ListItem(id="wallet", text="Wallet"),
                        ListItem(id="umbrella", text="Umbrella", is_optional=True),
                    ],
                ),
                Step(id="GO", step_number=2, title="Lock door", estimated_duration=1),
            ],
        )
    )


def test_list_items_tick_and_untick(engine):
    proc = _packing_list(engine)
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id)
    engine.tracker.complete_list_item(c.id, "PACK", "keys")
    engine.tracker.complete_list_item(c.id, "PACK", "wallet")
    c = engine.tracker.complete_list_item(c.id, "PACK", "keys")
    assert c.completed_list_items == {"PACK": ["keys", "wallet"]}
    c = engine.tracker.uncomplete_list_item(c.id, "PACK", "keys")
    assert c.completed_list_items == {"PACK": ["wallet"]}
    c = engine.tracker.uncomplete_list_item(c.id, "PACK", "wallet")
    assert c.completed_list_items == {}
    # Stored shape survives a reload
    engine.tracker.complete_list_item(c.id, "PACK", "umbrella")
    assert engine.store.get_completion(c.id).completed_list_items == {"PACK": ["umbrella"]}


def test_list_items_are_validated_against_pinned_step(engine):
    proc = _packing_list(engine)
    c = _occurrence(engine, proc)
    with pytest.raises(InvalidTransition):
        engine.tracker.complete_list_item(c.id, "PACK", "keys")
    engine.tracker.start(c.id)
    with pytest.raises(UnknownListItem):
        engine.tracker.complete_list_item(c.id, "PACK", "passport")
    with pytest.raises(UnknownListItem):
        engine.tracker.complete_list_item(c.id, "GO", "keys")
    with pytest.raises(UnknownStep):
        engine.tracker.complete_list_item(c.id, "NOPE", "keys")
    with pytest.raises(StaleVersion):
        engine.tracker.complete_list_item(c.id, "PACK", "keys", procedure_version=2)

    # Items added in a later version are not part of the pinned step
    steps = [s.to_dict() for s in proc.steps]
    steps[0]["list_items"].append({"id": "passport", "text": "Passport"})
    engine.store.update_procedure(proc.id, {"steps": steps})
    with pytest.raises(UnknownListItem):
        engine.tracker.complete_list_item(c.id, "PACK", "passport")
    assert engine.store.get_completion(c.id).completed_list_items == {}


def test_naive_start_then_finish_now(engine):
    c = _occurrence(engine, _procedure(engine))
    c = engine.tracker.start(c.id, at=datetime(2025, 1, 6, 7, 0))
    assert c.started_at.tzinfo is not None
    c = engine.tracker.finish(c.id)
    assert c.status == CompletionStatus.COMPLETED
    assert c.completed_at.tzinfo is not None
    assert c.actual_duration > 0


def test_aware_and_naive_timestamps_mix(engine):
    c = _occurrence(engine, _procedure(engine))
    engine.tracker.start(c.id, at=datetime(2025, 1, 6, 7, 0, tzinfo=timezone.utc))
    c = engine.tracker.finish(c.id, at=datetime(2025, 1, 6, 7, 12))
    assert c.actual_duration == 12.0


def test_finish_survives_analytics_for_deleted_procedure(engine, monkeypatch):
    proc = _procedure(engine)
    c = _occurrence(engine, proc)
    engine.tracker.start(c.id)

    def gone(completion):
        raise ProcedureNotFound(completion.procedure_id)

    monkeypatch.setattr(engine.aggregator, "record", gone)
    c = engine.tracker.finish(c.id)
    assert c.status == CompletionStatus.COMPLETED
    skipped = engine.tracker.skip(_occurrence(engine, proc, day=date(2025, 1, 7)).id)
    assert skipped.status == CompletionStatus.SKIPPED


def test_concurrent_finishes_all_reach_analytics(engine):
    proc = _procedure(engine, n_steps=1)
    ids = []
    for offset in range(12):
        c = _occurrence(engine, proc, day=date(2025, 2, 1 + offset))
        engine.tracker.start(c.id, at=datetime(2025, 2, 1 + offset, 7, 0))
        ids.append(c.id)
    barrier = threading.Barrier(len(ids))
    errors = []

    def worker(completion_id):
        try:
            barrier.wait()
            engine.tracker.finish(completion_id)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(cid,)) for cid in ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    state = engine.store.get_analytics_state(proc.id)
    assert len(state["outcomes"]) == 12
    assert len(state["durations"]) == 10
    assert engine.store.get_procedure(proc.id).analytics.completion_rate == 1.0
