"""Pool processing engine: admission, batch assignment and emergency override."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from backend.domain.models import (
    AdmissionDecision,
    AssignmentPolicy,
    OutcomeStatus,
    PoolEntry,
    PoolStatus,
    ProcessingOutcome,
    ProcessingType,
    RetryPolicy,
    WorkloadHistory,
)
from backend.repository.data_repository import DataRepository
from backend.services.policy_service import PolicyStore
from backend.services.pool_service import (
    BookingNotFoundError,
    BookingPool,
    NotClaimableError,
    PoolError,
)
from backend.services.scoring_service import order_entries, rank_candidates
from backend.utils.clock import Clock, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    booking_id: int
    decision: AdmissionDecision
    reason: str
    interpreter_id: Optional[str] = None
    deadline: Optional[datetime] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "booking_id": self.booking_id,
            "decision": self.decision.value,
            "reason": self.reason,
            "interpreter_id": self.interpreter_id,
            "deadline": self.deadline.isoformat() if self.deadline else None,
        }


@dataclass(frozen=True)
class BatchResult:
    batch_id: str
    processing_type: ProcessingType
    started_at: datetime
    finished_at: datetime
    outcomes: list[ProcessingOutcome] = field(default_factory=list)
    auto_assign_enabled: bool = True

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    def to_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "processing_type": self.processing_type.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "auto_assign_enabled": self.auto_assign_enabled,
            "processed": self.processed,
            "assigned": self.count(OutcomeStatus.ASSIGNED),
            "failed": self.count(OutcomeStatus.FAILED),
            "retried": self.count(OutcomeStatus.RETRY),
            "skipped": self.count(OutcomeStatus.SKIPPED),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class _HistoryCache:
    """Lazily loads workload history and drops it after every commit."""

    def __init__(self, repository: DataRepository, policy: AssignmentPolicy, now: datetime) -> None:
        self._repository = repository
        self._policy = policy
        self._now = now
        self._history: Optional[WorkloadHistory] = None

    def get(self) -> WorkloadHistory:
        if self._history is None:
            self._history = self._repository.load_workload_history(
                self._now,
                self._policy.fairness_window_days,
            )
        return self._history

    def invalidate(self) -> None:
        self._history = None


class PoolProcessingEngine:
    """Claims due pool entries, scores interpreters and commits assignments.

    Each entry is processed in isolation: an exception while handling one
    entry releases that entry for retry and the batch moves on.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        pool: Optional[BookingPool] = None,
        policy_store: Optional[PolicyStore] = None,
        clock: Clock = utc_now,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock
        self._pool = pool or BookingPool(self._repository, self._settings, clock=clock)
        self._policy_store = policy_store or PolicyStore(self._repository, self._settings)
        self._retry_policy = retry_policy or self._pool.default_retry_policy()

    @property
    def pool(self) -> BookingPool:
        return self._pool

    @property
    def policy_store(self) -> PolicyStore:
        return self._policy_store

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    # --- Batch processing ---

    def process_ready_entries(self) -> BatchResult:
        return self._process_batch(self._pool.get_ready_for_assignment(), ProcessingType.THRESHOLD)

    def process_deadline_entries(self) -> BatchResult:
        return self._process_batch(self._pool.get_deadline_entries(), ProcessingType.DEADLINE)

    def process_emergency_override(self) -> BatchResult:
        """Process every claimable entry regardless of its deadline."""
        entries = [
            entry
            for entry in self._pool.get_all_pool_entries()
            if entry.pool_status in (PoolStatus.WAITING, PoolStatus.READY)
        ]
        return self._process_batch(entries, ProcessingType.EMERGENCY)

    def process_entry(
        self,
        entry: PoolEntry,
        processing_type: ProcessingType = ProcessingType.RECOVERY,
    ) -> ProcessingOutcome:
        policy = self._policy_store.load()
        if not policy.auto_assign_enabled:
            return ProcessingOutcome(
                booking_id=entry.booking_id,
                status=OutcomeStatus.SKIPPED,
                processing_type=processing_type,
                reason="auto-assign disabled",
                attempts=entry.pool_processing_attempts,
            )
        now = self._clock()
        history = _HistoryCache(self._repository, policy, now)
        return self._process_single(entry, policy, processing_type, history, now)

    def _process_batch(self, entries: list[PoolEntry], processing_type: ProcessingType) -> BatchResult:
        batch_id = str(uuid4())
        started_at = self._clock()
        policy = self._policy_store.load()
        if not policy.auto_assign_enabled:
            logger.info(
                "Pool batch skipped | batch_id=%s | type=%s | reason=auto_assign_disabled | pending=%s",
                batch_id,
                processing_type.value,
                len(entries),
            )
            return BatchResult(
                batch_id=batch_id,
                processing_type=processing_type,
                started_at=started_at,
                finished_at=self._clock(),
                auto_assign_enabled=False,
            )

        history = _HistoryCache(self._repository, policy, started_at)
        outcomes = [
            self._process_single(entry, policy, processing_type, history, started_at)
            for entry in order_entries(entries)
        ]
        result = BatchResult(
            batch_id=batch_id,
            processing_type=processing_type,
            started_at=started_at,
            finished_at=self._clock(),
            outcomes=outcomes,
        )
        logger.info(
            (
                "Pool batch completed | batch_id=%s | type=%s | processed=%s | assigned=%s | "
                "failed=%s | retried=%s | skipped=%s"
            ),
            batch_id,
            processing_type.value,
            result.processed,
            result.count(OutcomeStatus.ASSIGNED),
            result.count(OutcomeStatus.FAILED),
            result.count(OutcomeStatus.RETRY),
            result.count(OutcomeStatus.SKIPPED),
        )
        return result

    def _process_single(
        self,
        entry: PoolEntry,
        policy: AssignmentPolicy,
        processing_type: ProcessingType,
        history: _HistoryCache,
        now: datetime,
    ) -> ProcessingOutcome:
        booking_id = entry.booking_id
        try:
            claimed = self._pool.mark_as_processing(booking_id)
        except (NotClaimableError, BookingNotFoundError) as exc:
            logger.info("Pool entry not claimed | booking_id=%s | reason=%s", booking_id, exc)
            return ProcessingOutcome(
                booking_id=booking_id,
                status=OutcomeStatus.SKIPPED,
                processing_type=processing_type,
                reason=str(exc),
                attempts=entry.pool_processing_attempts,
            )
        except Exception as exc:
            # An entry left in processing by a partial claim is reset by the stuck-entry detector.
            logger.exception(
                "Pool entry claim error | booking_id=%s | type=%s",
                booking_id,
                processing_type.value,
            )
            return ProcessingOutcome(
                booking_id=booking_id,
                status=OutcomeStatus.RETRY,
                processing_type=processing_type,
                reason=f"claim error: {exc}",
                attempts=entry.pool_processing_attempts,
            )

        try:
            return self._assign_claimed(claimed, policy, processing_type, history, now)
        except Exception as exc:
            logger.exception(
                "Pool entry processing error | booking_id=%s | type=%s",
                booking_id,
                processing_type.value,
            )
            return self._release_after_error(claimed, processing_type, exc)

    def _assign_claimed(
        self,
        claimed: PoolEntry,
        policy: AssignmentPolicy,
        processing_type: ProcessingType,
        history: _HistoryCache,
        now: datetime,
    ) -> ProcessingOutcome:
        booking_id = claimed.booking_id
        if claimed.booking_status == "cancel" or claimed.interpreter_id is not None:
            reason = "booking cancelled" if claimed.booking_status == "cancel" else "booking already assigned"
            self._pool.remove_from_pool(booking_id)
            return ProcessingOutcome(
                booking_id=booking_id,
                status=OutcomeStatus.SKIPPED,
                processing_type=processing_type,
                reason=reason,
                interpreter_id=claimed.interpreter_id,
                attempts=claimed.pool_processing_attempts,
            )

        priority = self._policy_store.get_meeting_priority(claimed.meeting_type)
        conflicts = self._repository.find_time_conflicts(booking_id, claimed.time_start, claimed.time_end)
        ranked = rank_candidates(claimed, policy, history.get(), priority, now, conflicts)
        if not ranked:
            self._pool.mark_as_failed(booking_id)
            logger.warning(
                "No eligible interpreter | booking_id=%s | type=%s | attempts=%s",
                booking_id,
                processing_type.value,
                claimed.pool_processing_attempts,
            )
            return ProcessingOutcome(
                booking_id=booking_id,
                status=OutcomeStatus.FAILED,
                processing_type=processing_type,
                reason="no eligible interpreter",
                attempts=claimed.pool_processing_attempts,
            )

        best = ranked[0]
        committed = self._repository.assign_interpreter(
            booking_id,
            best.interpreter_id,
            best.total,
            processing_type.value,
            now,
            require_claim=True,
        )
        if not committed:
            logger.warning("Assignment commit lost its claim | booking_id=%s", booking_id)
            return ProcessingOutcome(
                booking_id=booking_id,
                status=OutcomeStatus.SKIPPED,
                processing_type=processing_type,
                reason="claim lost before commit",
                attempts=claimed.pool_processing_attempts,
            )

        history.invalidate()
        logger.info(
            "Interpreter assigned | booking_id=%s | interpreter_id=%s | score=%.4f | type=%s",
            booking_id,
            best.interpreter_id,
            best.total,
            processing_type.value,
        )
        return ProcessingOutcome(
            booking_id=booking_id,
            status=OutcomeStatus.ASSIGNED,
            processing_type=processing_type,
            reason="assigned",
            interpreter_id=best.interpreter_id,
            score=best.total,
            attempts=claimed.pool_processing_attempts,
        )

    def _release_after_error(
        self,
        claimed: PoolEntry,
        processing_type: ProcessingType,
        error: Exception,
    ) -> ProcessingOutcome:
        try:
            status = self._pool.release_after_error(claimed.booking_id, self._retry_policy)
        except (PoolError, sqlite3.Error):
            # The stuck-entry detector resets entries left in processing.
            logger.exception("Pool entry release failed | booking_id=%s", claimed.booking_id)
            status = PoolStatus.PROCESSING
        outcome_status = OutcomeStatus.FAILED if status is PoolStatus.FAILED else OutcomeStatus.RETRY
        return ProcessingOutcome(
            booking_id=claimed.booking_id,
            status=outcome_status,
            processing_type=processing_type,
            reason=f"processing error: {error}",
            attempts=claimed.pool_processing_attempts,
        )

    # --- Admission ---

    def admit_booking(self, booking_id: int) -> AdmissionResult:
        """Assign now, pool with a deadline, or defer until the booking nears its horizon."""
        booking = self._repository.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} does not exist")
        if booking.booking_status == "cancel" or booking.interpreter_id is not None:
            return AdmissionResult(
                booking_id=booking_id,
                decision=AdmissionDecision.SKIPPED,
                reason="booking cancelled or already assigned",
                interpreter_id=booking.interpreter_id,
            )
        entry = self._pool.get_pool_entry(booking_id)
        if entry.pool_status is not PoolStatus.NONE:
            return AdmissionResult(
                booking_id=booking_id,
                decision=AdmissionDecision.SKIPPED,
                reason=f"booking already pooled ({entry.pool_status.value})",
                deadline=entry.pool_deadline_time,
            )

        now = self._clock()
        decision = self._policy_store.classify_booking(booking.time_start, booking.meeting_type, now)
        deadline = self._policy_store.compute_deadline(booking.time_start, booking.meeting_type)

        if decision is AdmissionDecision.DEFERRED:
            logger.info("Booking admission deferred | booking_id=%s", booking_id)
            return AdmissionResult(
                booking_id=booking_id,
                decision=AdmissionDecision.DEFERRED,
                reason="outside general threshold",
            )

        if decision is AdmissionDecision.ASSIGNED:
            policy = self._policy_store.load()
            if policy.auto_assign_enabled:
                priority = self._policy_store.get_meeting_priority(booking.meeting_type)
                history = self._repository.load_workload_history(now, policy.fairness_window_days)
                conflicts = self._repository.find_time_conflicts(
                    booking_id, booking.time_start, booking.time_end
                )
                ranked = rank_candidates(booking, policy, history, priority, now, conflicts)
                if ranked and self._repository.assign_interpreter(
                    booking_id,
                    ranked[0].interpreter_id,
                    ranked[0].total,
                    ProcessingType.THRESHOLD.value,
                    now,
                    require_claim=False,
                ):
                    logger.info(
                        "Booking assigned on admission | booking_id=%s | interpreter_id=%s",
                        booking_id,
                        ranked[0].interpreter_id,
                    )
                    return AdmissionResult(
                        booking_id=booking_id,
                        decision=AdmissionDecision.ASSIGNED,
                        reason="inside urgent threshold",
                        interpreter_id=ranked[0].interpreter_id,
                    )
            # Urgent bookings that could not be assigned wait with an elapsed deadline.
            deadline = min(deadline, now)
            self._pool.add_to_pool(booking_id, deadline)
            return AdmissionResult(
                booking_id=booking_id,
                decision=AdmissionDecision.POOLED,
                reason="urgent booking pooled for deadline processing",
                deadline=deadline,
            )

        self._pool.add_to_pool(booking_id, deadline)
        return AdmissionResult(
            booking_id=booking_id,
            decision=AdmissionDecision.POOLED,
            reason="inside general threshold",
            deadline=deadline,
        )

    def admit_deferred_bookings(self) -> list[AdmissionResult]:
        """Admit unpooled, unassigned bookings that have entered their horizon."""
        now = self._clock()
        results: list[AdmissionResult] = []
        for booking in self._repository.list_unpooled_unassigned_bookings(now):
            decision = self._policy_store.classify_booking(booking.time_start, booking.meeting_type, now)
            if decision is AdmissionDecision.DEFERRED:
                continue
            try:
                results.append(self.admit_booking(booking.booking_id))
            except PoolError as exc:
                logger.warning(
                    "Deferred booking admission failed | booking_id=%s | reason=%s",
                    booking.booking_id,
                    exc,
                )
        logger.info("Deferred bookings swept | admitted=%s", len(results))
        return results

    def get_processing_status(self) -> dict[str, object]:
        stats = self._pool.get_pool_stats()
        return {
            "pool_size": stats.total_in_pool,
            "ready_for_processing": stats.ready_for_processing,
            "deadline_entries": len(self._pool.get_deadline_entries()),
            "failed_entries": stats.failed_entries,
            "currently_processing": stats.currently_processing,
            "auto_assign_enabled": self._policy_store.load().auto_assign_enabled,
        }
