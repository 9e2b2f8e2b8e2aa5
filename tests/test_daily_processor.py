from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from backend.domain.models import PoolStatus
from backend.services.daily_processor import DailyPoolProcessor

from conftest import BASE_TIME


@pytest.fixture
def processor(engine, recovery, repository, settings, clock) -> DailyPoolProcessor:
    processor = DailyPoolProcessor(
        engine=engine,
        recovery_manager=recovery,
        repository=repository,
        settings=settings,
        clock=clock,
    )
    yield processor
    processor.stop()


def test_daily_run_admits_recovers_and_assigns(
    make_interpreters, make_booking, pool, engine, processor, repository, clock
) -> None:
    make_interpreters("A", "B")
    deferred = make_booking(starts_in=timedelta(days=40))
    stuck = make_booking(starts_in=timedelta(days=20))
    pool.add_to_pool(stuck, BASE_TIME + timedelta(days=7))
    pool.mark_as_processing(stuck)

    clock.advance(days=11)
    result = processor.process_daily_pool_now()

    assert result.skipped is False
    assert result.admitted == 1
    assert result.recovered_stuck == 1
    assert repository.get_booking(stuck).interpreter_id is not None
    assert pool.get_pool_entry(deferred).pool_status is PoolStatus.WAITING

    runs = repository.list_pool_runs(BASE_TIME)
    assert len(runs) == 1
    assert runs[0].batch_id == result.batch_id
    assert runs[0].assigned_count == 1


def test_overlapping_run_is_skipped(engine, processor, monkeypatch) -> None:
    started = threading.Event()
    release = threading.Event()
    original_admit = engine.admit_deferred_bookings

    def slow_admit():
        started.set()
        release.wait(timeout=5)
        return original_admit()

    monkeypatch.setattr(engine, "admit_deferred_bookings", slow_admit)
    results = []
    worker = threading.Thread(target=lambda: results.append(processor.process_daily_pool_now()))
    worker.start()
    assert started.wait(timeout=5)

    overlapping = processor.process_daily_pool_now()
    release.set()
    worker.join(timeout=5)

    assert overlapping.skipped is True
    assert overlapping.reason == "run already in progress"
    assert results[0].skipped is False


def test_processing_needed_tracks_interval_and_due_entries(
    make_booking, pool, processor, clock
) -> None:
    assert processor.is_processing_needed() is True

    processor.process_daily_pool_now()
    assert processor.is_processing_needed() is False

    booking_id = make_booking(starts_in=timedelta(days=10))
    pool.add_to_pool(booking_id, BASE_TIME + timedelta(hours=1))
    clock.advance(hours=2)
    assert processor.is_processing_needed() is True

    pool.remove_from_pool(booking_id)
    assert processor.is_processing_needed() is False
    clock.advance(hours=24)
    assert processor.is_processing_needed() is True


def test_failed_run_is_recorded_and_reraised(engine, processor, monkeypatch) -> None:
    def broken_deadline_pass():
        raise RuntimeError("simulated engine failure")

    monkeypatch.setattr(engine, "process_deadline_entries", broken_deadline_pass)

    with pytest.raises(RuntimeError):
        processor.process_daily_pool_now()

    statistics = processor.get_daily_processing_statistics()
    assert statistics["totals"]["error_count"] == 1
    assert statistics["totals"]["runs"] == 1


def test_statistics_aggregate_runs_per_day(
    make_interpreters, make_booking, pool, processor, clock
) -> None:
    make_interpreters("A")
    processor.process_daily_pool_now()
    booking_id = make_booking(starts_in=timedelta(days=5))
    pool.add_to_pool(booking_id, BASE_TIME)
    processor.process_daily_pool_now()

    clock.advance(days=1)
    processor.process_daily_pool_now()

    statistics = processor.get_daily_processing_statistics(days=7)

    assert statistics["lookback_days"] == 7
    assert [day["date"] for day in statistics["days"]] == ["2026-03-02", "2026-03-03"]
    first_day = statistics["days"][0]
    assert first_day["runs"] == 2
    assert first_day["assigned_count"] == 1
    assert first_day["assignment_rate"] == pytest.approx(1.0)
    assert statistics["days"][1]["assignment_rate"] == 0.0
    assert statistics["totals"]["runs"] == 3


def test_statistics_are_empty_without_runs(processor) -> None:
    statistics = processor.get_daily_processing_statistics()

    assert statistics["days"] == []
    assert statistics["totals"]["runs"] == 0


def test_start_and_stop_toggle_timer(processor) -> None:
    processor.start()
    status = processor.get_status()
    assert status["is_running"] is True
    assert status["next_run_at"] is not None

    processor.start()
    processor.stop()

    status = processor.get_status()
    assert status["is_running"] is False
    assert status["next_run_at"] is None
