"""Scheduled pool processing and run statistics."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

import pandas as pd

from backend.domain.models import OutcomeStatus
from backend.repository.data_repository import DataRepository, PoolRunRecord
from backend.services.pool_engine import BatchResult, PoolProcessingEngine
from backend.services.recovery_service import PoolErrorRecoveryManager
from backend.utils.clock import Clock, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_STATISTIC_COLUMNS = [
    "runs",
    "processed_count",
    "assigned_count",
    "failed_count",
    "retried_count",
    "skipped_count",
    "error_count",
]


@dataclass(frozen=True)
class DailyProcessingResult:
    batch_id: str
    started_at: datetime
    finished_at: datetime
    skipped: bool = False
    reason: str = "completed"
    admitted: int = 0
    recovered_stuck: int = 0
    batches: list[BatchResult] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(batch.count(status) for batch in self.batches)

    @property
    def processed(self) -> int:
        return sum(batch.processed for batch in self.batches)

    def to_record(self, error_count: int = 0) -> PoolRunRecord:
        return PoolRunRecord(
            batch_id=self.batch_id,
            started_at=self.started_at,
            finished_at=self.finished_at,
            processed_count=self.processed,
            assigned_count=self.count(OutcomeStatus.ASSIGNED),
            failed_count=self.count(OutcomeStatus.FAILED),
            retried_count=self.count(OutcomeStatus.RETRY),
            skipped_count=self.count(OutcomeStatus.SKIPPED),
            error_count=error_count,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "skipped": self.skipped,
            "reason": self.reason,
            "admitted": self.admitted,
            "recovered_stuck": self.recovered_stuck,
            "processed": self.processed,
            "assigned": self.count(OutcomeStatus.ASSIGNED),
            "failed": self.count(OutcomeStatus.FAILED),
            "retried": self.count(OutcomeStatus.RETRY),
            "batches": [batch.to_dict() for batch in self.batches],
        }


class DailyPoolProcessor:
    """Runs the pool on a fixed interval in a background timer thread.

    Only one run executes at a time; a trigger that fires while a run is in
    progress returns a skipped result instead of waiting.
    """

    def __init__(
        self,
        engine: PoolProcessingEngine,
        recovery_manager: PoolErrorRecoveryManager,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._engine = engine
        self._recovery_manager = recovery_manager
        self._clock = clock
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._last_run_at: Optional[datetime] = None
        self._next_run_at: Optional[datetime] = None
        self._last_result: Optional[DailyProcessingResult] = None

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self._settings.daily_processing_interval_hours)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                return
            self._running = True
            self._schedule_locked()
        logger.info(
            "Daily pool processor started | interval_hours=%s",
            self._settings.daily_processing_interval_hours,
        )

    def stop(self) -> None:
        with self._state_lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._next_run_at = None
        logger.info("Daily pool processor stopped")

    def _schedule_locked(self) -> None:
        self._timer = threading.Timer(self.interval.total_seconds(), self._on_timer)
        self._timer.daemon = True
        self._timer.name = "daily-pool-processor"
        self._timer.start()
        self._next_run_at = self._clock() + self.interval

    def _on_timer(self) -> None:
        try:
            if self.is_processing_needed():
                self.process_daily_pool_now()
            else:
                logger.info("Scheduled pool run not needed")
        except Exception:
            logger.exception("Scheduled pool run failed")
        finally:
            with self._state_lock:
                if self._running:
                    self._schedule_locked()

    def is_processing_needed(self) -> bool:
        stats = self._engine.pool.get_pool_stats()
        if stats.ready_for_processing > 0:
            return True
        if self._engine.pool.get_deadline_entries():
            return True
        if self._last_run_at is None:
            return True
        return self._clock() - self._last_run_at >= self.interval

    def process_daily_pool_now(self) -> DailyProcessingResult:
        batch_id = str(uuid4())
        started_at = self._clock()
        if not self._run_lock.acquire(blocking=False):
            logger.info("Pool run skipped | batch_id=%s | reason=run_in_progress", batch_id)
            return DailyProcessingResult(
                batch_id=batch_id,
                started_at=started_at,
                finished_at=started_at,
                skipped=True,
                reason="run already in progress",
            )

        try:
            logger.info("Pool run started | batch_id=%s", batch_id)
            try:
                admitted = self._engine.admit_deferred_bookings()
                recovered = self._recovery_manager.recover_stuck_entries()
                deadline_batch = self._engine.process_deadline_entries()
                ready_batch = self._engine.process_ready_entries()
            except Exception:
                failed_run = DailyProcessingResult(
                    batch_id=batch_id,
                    started_at=started_at,
                    finished_at=self._clock(),
                    reason="run failed",
                )
                self._repository.save_pool_run(failed_run.to_record(error_count=1))
                logger.exception("Pool run failed | batch_id=%s", batch_id)
                raise

            result = DailyProcessingResult(
                batch_id=batch_id,
                started_at=started_at,
                finished_at=self._clock(),
                admitted=len(admitted),
                recovered_stuck=len(recovered),
                batches=[deadline_batch, ready_batch],
            )
            self._repository.save_pool_run(result.to_record())
            self._last_run_at = result.finished_at
            self._last_result = result
            logger.info(
                "Pool run completed | batch_id=%s | admitted=%s | recovered=%s | processed=%s | assigned=%s",
                batch_id,
                result.admitted,
                result.recovered_stuck,
                result.processed,
                result.count(OutcomeStatus.ASSIGNED),
            )
            return result
        finally:
            self._run_lock.release()

    def get_status(self) -> dict[str, object]:
        return {
            "is_running": self._running,
            "run_in_progress": self._run_lock.locked(),
            "interval_hours": self._settings.daily_processing_interval_hours,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "next_run_at": self._next_run_at.isoformat() if self._next_run_at else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "processing_needed": self.is_processing_needed(),
        }

    def get_daily_processing_statistics(self, days: Optional[int] = None) -> dict[str, object]:
        lookback_days = days if days is not None else self._settings.statistics_lookback_days
        since = self._clock() - timedelta(days=lookback_days)
        runs = self._repository.list_pool_runs(since)
        empty_totals = {column: 0 for column in _STATISTIC_COLUMNS}
        if not runs:
            return {"lookback_days": lookback_days, "days": [], "totals": empty_totals}

        frame = pd.DataFrame(
            [
                {
                    "date": run.started_at.date().isoformat(),
                    "processed_count": run.processed_count,
                    "assigned_count": run.assigned_count,
                    "failed_count": run.failed_count,
                    "retried_count": run.retried_count,
                    "skipped_count": run.skipped_count,
                    "error_count": run.error_count,
                }
                for run in runs
            ]
        )
        frame["runs"] = 1
        daily = frame.groupby("date", sort=True)[_STATISTIC_COLUMNS].sum().reset_index()
        daily["assignment_rate"] = (
            daily["assigned_count"] / daily["processed_count"].where(daily["processed_count"] > 0)
        ).fillna(0.0)

        return {
            "lookback_days": lookback_days,
            "days": [
                {
                    "date": str(row["date"]),
                    **{column: int(row[column]) for column in _STATISTIC_COLUMNS},
                    "assignment_rate": float(row["assignment_rate"]),
                }
                for row in daily.to_dict(orient="records")
            ],
            "totals": {column: int(daily[column].sum()) for column in _STATISTIC_COLUMNS},
        }
