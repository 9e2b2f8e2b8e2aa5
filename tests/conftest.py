"""Shared fixtures: temporary SQLite database, controllable clock and service wiring."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from backend.domain.models import MeetingType
from backend.repository.data_repository import DataRepository
from backend.services.policy_service import PolicyStore
from backend.services.pool_engine import PoolProcessingEngine
from backend.services.pool_service import BookingPool
from backend.services.recovery_service import PoolErrorRecoveryManager
from backend.utils.config import get_settings


BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.now = value


def build_test_settings(tmp_path, filename: str = "pool.db", **overrides):
    get_settings.cache_clear()
    base = get_settings()
    values = {
        "database_path": tmp_path / filename,
        "seed_demo_interpreters": False,
        "daily_processor_autostart": False,
        "pool_max_processing_attempts": 3,
        "pool_retry_backoff_minutes": 0,
        "pool_stuck_processing_minutes": 60,
    }
    values.update(overrides)
    return replace(base, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return build_test_settings(tmp_path)


@pytest.fixture
def repository(settings) -> DataRepository:
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_default_configuration()
    return repository


@pytest.fixture
def policy_store(repository, settings) -> PolicyStore:
    return PolicyStore(repository=repository, settings=settings)


@pytest.fixture
def pool(repository, settings, clock) -> BookingPool:
    return BookingPool(repository=repository, settings=settings, clock=clock)


@pytest.fixture
def engine(repository, settings, pool, policy_store, clock) -> PoolProcessingEngine:
    return PoolProcessingEngine(
        repository=repository,
        settings=settings,
        pool=pool,
        policy_store=policy_store,
        clock=clock,
    )


@pytest.fixture
def recovery(engine, settings, clock) -> PoolErrorRecoveryManager:
    return PoolErrorRecoveryManager(engine=engine, settings=settings, clock=clock)


@pytest.fixture
def make_interpreters(repository):
    """Factory fixture for creating active interpreters."""

    def _make_interpreters(*interpreter_ids: str) -> list[str]:
        for interpreter_id in interpreter_ids:
            repository.create_interpreter(interpreter_id, f"Interpreter {interpreter_id}")
        return list(interpreter_ids)

    return _make_interpreters


@pytest.fixture
def make_booking(repository, clock):
    """Factory fixture for bookings starting relative to the fake clock."""

    def _make_booking(
        meeting_type: MeetingType = MeetingType.GENERAL,
        starts_in: timedelta = timedelta(days=20),
        hours: float = 2.0,
        interpreter_id: str | None = None,
        booking_status: str = "waiting",
    ) -> int:
        time_start = clock() + starts_in
        return repository.create_booking(
            meeting_type=meeting_type,
            time_start=time_start,
            time_end=time_start + timedelta(hours=hours),
            interpreter_id=interpreter_id,
            booking_status=booking_status,
        )

    return _make_booking
