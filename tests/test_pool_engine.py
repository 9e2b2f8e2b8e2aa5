from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from backend.domain.models import (
    AdmissionDecision,
    MeetingType,
    OutcomeStatus,
    PoolStatus,
    ProcessingType,
)
from backend.services.pool_service import BookingNotFoundError

from conftest import BASE_TIME


def _due_entry(make_booking, pool, **booking_kwargs) -> int:
    booking_id = make_booking(**booking_kwargs)
    pool.add_to_pool(booking_id, BASE_TIME - timedelta(minutes=1))
    return booking_id


def test_pooled_booking_resolves_only_after_deadline(
    make_interpreters, make_booking, policy_store, engine, repository, clock
) -> None:
    make_interpreters("A", "B")
    policy_store.update_meeting_priority(MeetingType.GENERAL, {"urgent_threshold_days": 10})
    booking_id = make_booking(starts_in=timedelta(days=20))

    admission = engine.admit_booking(booking_id)
    assert admission.decision is AdmissionDecision.POOLED
    assert admission.deadline == BASE_TIME + timedelta(days=10)

    clock.set(BASE_TIME + timedelta(days=9))
    early = engine.process_ready_entries()
    assert early.processed == 0
    entry = engine.pool.get_pool_entry(booking_id)
    assert entry.pool_status is PoolStatus.WAITING
    assert entry.pool_processing_attempts == 0

    clock.set(BASE_TIME + timedelta(days=10, hours=12))
    result = engine.process_ready_entries()

    assert result.count(OutcomeStatus.ASSIGNED) == 1
    outcome = result.outcomes[0]
    assert outcome.booking_id == booking_id
    assert outcome.processing_type is ProcessingType.THRESHOLD
    booking = repository.get_booking(booking_id)
    assert booking.interpreter_id == outcome.interpreter_id == "A"
    assert engine.pool.get_pool_entry(booking_id).pool_status is PoolStatus.NONE
    assert repository.count_assignment_logs() == 1


def test_urgent_booking_is_assigned_on_admission(make_interpreters, make_booking, engine, repository) -> None:
    make_interpreters("A")
    booking_id = make_booking(starts_in=timedelta(hours=12))

    admission = engine.admit_booking(booking_id)

    assert admission.decision is AdmissionDecision.ASSIGNED
    assert admission.interpreter_id == "A"
    assert repository.get_booking(booking_id).interpreter_id == "A"
    assert engine.pool.get_pool_stats().total_in_pool == 0


def test_urgent_booking_without_candidate_is_pooled_as_due(
    make_interpreters, make_booking, engine, repository
) -> None:
    booking_id = make_booking(starts_in=timedelta(hours=12))

    admission = engine.admit_booking(booking_id)

    assert admission.decision is AdmissionDecision.POOLED
    assert admission.deadline <= BASE_TIME
    assert [entry.booking_id for entry in engine.pool.get_deadline_entries()] == [booking_id]

    make_interpreters("A")
    result = engine.process_deadline_entries()
    assert result.count(OutcomeStatus.ASSIGNED) == 1
    assert repository.get_booking(booking_id).interpreter_id == "A"


def test_far_booking_is_deferred_then_swept(make_interpreters, make_booking, engine, clock) -> None:
    make_interpreters("A")
    booking_id = make_booking(starts_in=timedelta(days=60))

    assert engine.admit_booking(booking_id).decision is AdmissionDecision.DEFERRED
    assert engine.admit_deferred_bookings() == []

    clock.advance(days=31)
    results = engine.admit_deferred_bookings()

    assert [(result.booking_id, result.decision) for result in results] == [
        (booking_id, AdmissionDecision.POOLED)
    ]
    assert engine.pool.get_pool_entry(booking_id).pool_status is PoolStatus.WAITING


def test_admission_skips_pooled_assigned_and_cancelled(make_interpreters, make_booking, engine) -> None:
    make_interpreters("A")
    pooled = make_booking()
    engine.admit_booking(pooled)
    assigned = make_booking(interpreter_id="A")
    cancelled = make_booking(booking_status="cancel")

    for booking_id in (pooled, assigned, cancelled):
        assert engine.admit_booking(booking_id).decision is AdmissionDecision.SKIPPED

    with pytest.raises(BookingNotFoundError):
        engine.admit_booking(12345)


def test_no_eligible_candidate_marks_entry_failed(make_booking, pool, engine) -> None:
    booking_id = _due_entry(make_booking, pool)

    result = engine.process_ready_entries()

    assert result.outcomes[0].status is OutcomeStatus.FAILED
    entry = pool.get_pool_entry(booking_id)
    assert entry.pool_status is PoolStatus.FAILED
    assert entry.pool_processing_attempts == 1


def test_disabled_auto_assign_claims_nothing(make_interpreters, make_booking, pool, policy_store, engine) -> None:
    make_interpreters("A")
    booking_id = _due_entry(make_booking, pool)
    policy_store.update({"auto_assign_enabled": False})

    result = engine.process_ready_entries()

    assert result.auto_assign_enabled is False
    assert result.processed == 0
    entry = pool.get_pool_entry(booking_id)
    assert entry.pool_status is PoolStatus.WAITING
    assert entry.pool_processing_attempts == 0


def test_error_on_one_entry_does_not_stop_the_batch(
    make_interpreters, make_booking, pool, engine, repository, monkeypatch
) -> None:
    make_interpreters("A", "B")
    broken = _due_entry(make_booking, pool, meeting_type=MeetingType.DR)
    healthy = _due_entry(make_booking, pool)
    original_assign = repository.assign_interpreter

    def flaky_assign(booking_id, *args, **kwargs):
        if booking_id == broken:
            raise RuntimeError("simulated storage failure")
        return original_assign(booking_id, *args, **kwargs)

    monkeypatch.setattr(repository, "assign_interpreter", flaky_assign)

    result = engine.process_ready_entries()

    statuses = {outcome.booking_id: outcome.status for outcome in result.outcomes}
    assert statuses == {broken: OutcomeStatus.RETRY, healthy: OutcomeStatus.ASSIGNED}
    broken_entry = pool.get_pool_entry(broken)
    assert broken_entry.pool_status is PoolStatus.WAITING
    assert broken_entry.pool_processing_attempts == 1
    assert pool.get_pool_entry(healthy).pool_status is PoolStatus.NONE


def test_repeated_errors_exhaust_retries(make_interpreters, make_booking, pool, engine, repository, monkeypatch) -> None:
    make_interpreters("A")
    booking_id = _due_entry(make_booking, pool)

    def always_fail(*args, **kwargs):
        raise RuntimeError("simulated storage failure")

    monkeypatch.setattr(repository, "assign_interpreter", always_fail)

    statuses = [engine.process_ready_entries().outcomes[0].status for _ in range(3)]

    assert statuses == [OutcomeStatus.RETRY, OutcomeStatus.RETRY, OutcomeStatus.FAILED]
    assert pool.get_pool_entry(booking_id).pool_status is PoolStatus.FAILED
    assert engine.process_ready_entries().processed == 0


def test_commit_never_exceeds_max_gap(make_interpreters, make_booking, pool, engine, repository, clock) -> None:
    make_interpreters("A", "B")
    make_booking(starts_in=timedelta(days=-1), hours=10.0, interpreter_id="A", booking_status="approve")
    booking_id = _due_entry(make_booking, pool)

    result = engine.process_ready_entries()

    assert result.outcomes[0].interpreter_id == "B"
    assert repository.get_booking(booking_id).interpreter_id == "B"


def test_batch_reloads_workload_between_commits(make_interpreters, make_booking, pool, engine) -> None:
    make_interpreters("A", "B")
    first = _due_entry(make_booking, pool, hours=4.0)
    second = _due_entry(make_booking, pool, hours=4.0)

    result = engine.process_ready_entries()

    assigned = {outcome.booking_id: outcome.interpreter_id for outcome in result.outcomes}
    assert assigned == {first: "A", second: "B"}


def test_deadline_processing_ignores_expedited_entries(make_interpreters, make_booking, pool, engine) -> None:
    make_interpreters("A")
    expedited = make_booking()
    pool.add_to_pool(expedited, BASE_TIME + timedelta(days=5))
    pool.mark_as_ready(expedited)

    assert engine.process_deadline_entries().processed == 0

    result = engine.process_ready_entries()
    assert [outcome.booking_id for outcome in result.outcomes] == [expedited]
    assert result.outcomes[0].status is OutcomeStatus.ASSIGNED


def test_emergency_override_processes_entries_before_deadline(make_interpreters, make_booking, pool, engine) -> None:
    make_interpreters("A", "B")
    first = make_booking()
    second = make_booking()
    pool.add_to_pool(first, BASE_TIME + timedelta(days=8))
    pool.add_to_pool(second, BASE_TIME + timedelta(days=9))

    result = engine.process_emergency_override()

    assert result.processing_type is ProcessingType.EMERGENCY
    assert result.count(OutcomeStatus.ASSIGNED) == 2
    assert pool.get_pool_stats().total_in_pool == 0


def test_cancelled_pooled_booking_is_dropped(make_interpreters, make_booking, pool, engine, repository) -> None:
    make_interpreters("A")
    booking_id = _due_entry(make_booking, pool)
    repository.update_booking_status(booking_id, "cancel")

    result = engine.process_ready_entries()

    assert result.outcomes[0].status is OutcomeStatus.SKIPPED
    assert pool.get_pool_entry(booking_id).pool_status is PoolStatus.NONE
    assert repository.get_booking(booking_id).interpreter_id is None


def test_processing_status_snapshot(make_booking, pool, engine, clock) -> None:
    _due_entry(make_booking, pool)
    waiting = make_booking()
    pool.add_to_pool(waiting, BASE_TIME + timedelta(days=4))
    failed = _due_entry(make_booking, pool)
    pool.mark_as_failed(failed)

    status = engine.get_processing_status()

    assert status == {
        "pool_size": 3,
        "ready_for_processing": 1,
        "deadline_entries": 1,
        "failed_entries": 1,
        "currently_processing": 0,
        "auto_assign_enabled": True,
    }


def test_least_recently_served_interpreter_wins_ties(
    make_interpreters, make_booking, pool, engine, repository
) -> None:
    make_interpreters("A", "B")
    history_booking = make_booking(starts_in=timedelta(days=-40))
    repository.save_assignment_log(history_booking, "A", "THRESHOLD", BASE_TIME - timedelta(days=2))
    booking_id = _due_entry(make_booking, pool)

    result = engine.process_ready_entries()

    assert result.outcomes[0].interpreter_id == "B"
    assert repository.get_booking(booking_id).interpreter_id == "B"


def test_inactive_interpreters_are_never_candidates(repository, make_booking, pool, engine) -> None:
    repository.create_interpreter("A", "Interpreter A", is_active=False)
    repository.create_interpreter("B", "Interpreter B")
    _due_entry(make_booking, pool)

    result = engine.process_ready_entries()

    assert result.outcomes[0].interpreter_id == "B"


def test_storage_error_while_claiming_one_entry_does_not_stop_the_batch(
    make_interpreters, make_booking, pool, engine, repository, monkeypatch
) -> None:
    make_interpreters("A")
    locked = _due_entry(make_booking, pool)
    healthy = _due_entry(make_booking, pool)
    original_transition = repository.transition_pool_status

    def locked_transition(booking_id, *args, **kwargs):
        if booking_id == locked:
            raise sqlite3.OperationalError("database is locked")
        return original_transition(booking_id, *args, **kwargs)

    monkeypatch.setattr(repository, "transition_pool_status", locked_transition)

    result = engine.process_ready_entries()

    outcomes = {outcome.booking_id: outcome for outcome in result.outcomes}
    assert outcomes[locked].status is OutcomeStatus.RETRY
    assert "database is locked" in outcomes[locked].reason
    assert outcomes[healthy].status is OutcomeStatus.ASSIGNED
    locked_entry = pool.get_pool_entry(locked)
    assert locked_entry.pool_status is PoolStatus.WAITING
    assert locked_entry.pool_processing_attempts == 0


def test_storage_error_while_releasing_is_contained(
    make_interpreters, make_booking, pool, engine, repository, monkeypatch
) -> None:
    make_interpreters("A")
    booking_id = _due_entry(make_booking, pool)

    def failing_assign(*args, **kwargs):
        raise RuntimeError("simulated storage failure")

    def failing_release(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(repository, "assign_interpreter", failing_assign)
    monkeypatch.setattr(repository, "release_processing", failing_release)

    result = engine.process_ready_entries()

    assert result.outcomes[0].status is OutcomeStatus.RETRY
    assert pool.get_pool_entry(booking_id).pool_status is PoolStatus.PROCESSING


def test_interpreter_with_overlapping_booking_is_not_double_booked(
    make_interpreters, make_booking, pool, engine, repository
) -> None:
    make_interpreters("A", "B")
    held = make_booking(starts_in=timedelta(days=20), interpreter_id="A", booking_status="approve")
    make_booking(starts_in=timedelta(days=15), interpreter_id="B", booking_status="approve")
    booking_id = _due_entry(make_booking, pool, starts_in=timedelta(days=20, hours=1), hours=1.0)

    assert repository.find_time_conflicts(
        booking_id,
        BASE_TIME + timedelta(days=20, hours=1),
        BASE_TIME + timedelta(days=20, hours=2),
    ) == {"A": held}

    result = engine.process_ready_entries()

    assert result.outcomes[0].status is OutcomeStatus.ASSIGNED
    assert result.outcomes[0].interpreter_id == "B"


def test_back_to_back_and_cancelled_bookings_are_not_conflicts(make_interpreters, make_booking, repository) -> None:
    make_interpreters("A", "B")
    make_booking(starts_in=timedelta(days=20), hours=2.0, interpreter_id="A", booking_status="approve")
    make_booking(starts_in=timedelta(days=20, hours=2), hours=1.0, interpreter_id="B", booking_status="cancel")
    booking_id = make_booking(starts_in=timedelta(days=20, hours=2), hours=1.0)

    conflicts = repository.find_time_conflicts(
        booking_id,
        BASE_TIME + timedelta(days=20, hours=2),
        BASE_TIME + timedelta(days=20, hours=3),
    )

    assert conflicts == {}


def test_only_conflicted_interpreter_leaves_entry_failed(make_interpreters, make_booking, pool, engine) -> None:
    make_interpreters("A")
    make_booking(starts_in=timedelta(days=20), interpreter_id="A", booking_status="approve")
    booking_id = _due_entry(make_booking, pool, starts_in=timedelta(days=20, hours=1))

    result = engine.process_ready_entries()

    assert result.outcomes[0].status is OutcomeStatus.FAILED
    assert pool.get_pool_entry(booking_id).pool_status is PoolStatus.FAILED
