"""Pool health auditing and recovery of stuck or failed entries."""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable, Optional

from backend.domain.models import (
    HealthReport,
    OutcomeStatus,
    PoolEntry,
    PoolStatus,
    ProcessingType,
    RecoveryOutcome,
    RecoveryStatus,
    RetryPolicy,
)
from backend.services.pool_engine import PoolProcessingEngine
from backend.services.pool_service import InvalidTransitionError, PoolError
from backend.utils.clock import Clock, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

# Any error makes the pool unhealthy; warnings only once this many pile up.
UNHEALTHY_WARNING_COUNT = 3


class PoolErrorRecoveryManager:
    def __init__(
        self,
        engine: PoolProcessingEngine,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._engine = engine
        self._pool = engine.pool
        self._retry_policy = retry_policy or engine.retry_policy
        self._clock = clock

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _stuck_entries(self, entries: Iterable[PoolEntry]) -> list[PoolEntry]:
        cutoff = self._clock() - timedelta(minutes=self._settings.pool_stuck_processing_minutes)
        return [
            entry
            for entry in entries
            if entry.pool_status is PoolStatus.PROCESSING
            and (
                entry.pool_processing_started_at is None
                or entry.pool_processing_started_at <= cutoff
            )
        ]

    def perform_health_check(self) -> HealthReport:
        """Inspect one snapshot of the pool; warnings are recoverable, errors need an operator."""
        now = self._clock()
        entries = self._pool.get_all_pool_entries()
        warnings: list[str] = []
        errors: list[str] = []

        stuck = self._stuck_entries(entries)
        if stuck:
            warnings.append(
                f"{len(stuck)} entries processing longer than "
                f"{self._settings.pool_stuck_processing_minutes} minutes"
            )

        failed = [entry for entry in entries if entry.pool_status is PoolStatus.FAILED]
        if failed:
            warnings.append(f"{len(failed)} failed entries awaiting retry or manual action")

        exhausted = [
            entry
            for entry in entries
            if entry.pool_processing_attempts >= self._retry_policy.max_attempts
        ]
        if exhausted:
            warnings.append(
                f"{len(exhausted)} entries reached the retry ceiling of "
                f"{self._retry_policy.max_attempts} attempts"
            )

        if not self._engine.policy_store.load().auto_assign_enabled:
            warnings.append("auto-assign is disabled; pooled entries will not be processed")

        for entry in entries:
            if entry.pool_status in (PoolStatus.WAITING, PoolStatus.READY) and (
                entry.pool_entry_time is None or entry.pool_deadline_time is None
            ):
                errors.append(f"booking {entry.booking_id} is pooled without entry or deadline time")
            if entry.interpreter_id is not None:
                errors.append(
                    f"booking {entry.booking_id} is pooled but already assigned to {entry.interpreter_id}"
                )
            if entry.booking_status == "cancel":
                errors.append(f"booking {entry.booking_id} is pooled but cancelled")

        report = HealthReport(
            is_healthy=not errors and len(warnings) < UNHEALTHY_WARNING_COUNT,
            warnings=warnings,
            errors=errors,
            checked_at=now,
            stuck_booking_ids=[entry.booking_id for entry in stuck],
        )
        log = logger.info if report.is_healthy else logger.warning
        log(
            "Pool health check | healthy=%s | warnings=%s | errors=%s | pool_size=%s",
            report.is_healthy,
            len(warnings),
            len(errors),
            len(entries),
        )
        return report

    def recover_stuck_entries(self) -> list[int]:
        recovered: list[int] = []
        for entry in self._stuck_entries(self._pool.get_processing_entries()):
            try:
                self._pool.reset_processing_status(entry.booking_id)
            except InvalidTransitionError:
                # Finished by its worker between the snapshot and the reset.
                logger.info("Stuck entry already resolved | booking_id=%s", entry.booking_id)
                continue
            recovered.append(entry.booking_id)
        logger.info("Stuck entries recovered | count=%s | booking_ids=%s", len(recovered), recovered)
        return recovered

    def process_with_error_recovery(
        self,
        entries: Optional[Iterable[PoolEntry]] = None,
    ) -> list[RecoveryOutcome]:
        """Retry the given entries (failed entries by default) once each."""
        targets = list(entries) if entries is not None else self._pool.get_failed_entries()
        outcomes: list[RecoveryOutcome] = []
        for entry in targets:
            try:
                outcomes.append(self._recover_entry(entry))
            except Exception as exc:
                logger.exception("Error recovery failed | booking_id=%s", entry.booking_id)
                outcomes.append(
                    RecoveryOutcome(
                        booking_id=entry.booking_id,
                        status=RecoveryStatus.STILL_FAILED,
                        reason=f"recovery error: {exc}",
                    )
                )
        logger.info(
            "Error recovery pass completed | entries=%s | assigned=%s | recovered=%s | still_failed=%s",
            len(outcomes),
            sum(1 for outcome in outcomes if outcome.status is RecoveryStatus.ASSIGNED),
            sum(1 for outcome in outcomes if outcome.status is RecoveryStatus.RECOVERED),
            sum(1 for outcome in outcomes if outcome.status is RecoveryStatus.STILL_FAILED),
        )
        return outcomes

    def _recover_entry(self, entry: PoolEntry) -> RecoveryOutcome:
        booking_id = entry.booking_id
        if entry.pool_status is PoolStatus.FAILED:
            if entry.pool_processing_attempts >= self._retry_policy.max_attempts:
                return RecoveryOutcome(
                    booking_id=booking_id,
                    status=RecoveryStatus.STILL_FAILED,
                    reason="retry ceiling reached",
                )
            try:
                self._pool.requeue_failed_entry(booking_id)
            except PoolError as exc:
                return RecoveryOutcome(
                    booking_id=booking_id,
                    status=RecoveryStatus.STILL_FAILED,
                    reason=str(exc),
                )
            entry = self._pool.get_pool_entry(booking_id)

        outcome = self._engine.process_entry(entry, ProcessingType.RECOVERY)
        if outcome.status is OutcomeStatus.ASSIGNED:
            return RecoveryOutcome(
                booking_id=booking_id,
                status=RecoveryStatus.ASSIGNED,
                reason=outcome.reason,
                interpreter_id=outcome.interpreter_id,
            )

        current = self._pool.get_pool_entry(booking_id)
        if current.pool_status in (PoolStatus.WAITING, PoolStatus.READY):
            return RecoveryOutcome(
                booking_id=booking_id,
                status=RecoveryStatus.RECOVERED,
                reason=f"returned to pool: {outcome.reason}",
            )
        return RecoveryOutcome(
            booking_id=booking_id,
            status=RecoveryStatus.STILL_FAILED,
            reason=outcome.reason,
        )
