"""Booking pool state machine backed by conditional repository updates."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from backend.domain.constraints import can_transition, sources_for
from backend.domain.models import PoolEntry, PoolStats, PoolStatus, RetryPolicy
from backend.repository.data_repository import DataRepository
from backend.utils.clock import Clock, ensure_utc, utc_now
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class PoolError(Exception):
    """Base error for pool state violations."""


class BookingNotFoundError(PoolError):
    """Raised when the referenced booking does not exist."""


class AlreadyPooledError(PoolError):
    """Raised when adding a booking that is already in the pool."""


class NotClaimableError(PoolError):
    """Raised when an entry cannot be claimed for processing."""


class InvalidTransitionError(PoolError):
    """Raised when a pool status change is not allowed from the current state."""


class BookingPool:
    """Pool operations on booking rows.

    Every state change is a single conditional UPDATE, so two workers racing
    for the same entry resolve inside the database: exactly one sees its
    update applied and the other gets an error.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._clock = clock

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self._settings.pool_max_processing_attempts,
            backoff_minutes=self._settings.pool_retry_backoff_minutes,
        )

    def _require_entry(self, booking_id: int) -> PoolEntry:
        entry = self._repository.get_pool_entry(booking_id)
        if entry is None:
            raise BookingNotFoundError(f"Booking {booking_id} does not exist")
        return entry

    def add_to_pool(self, booking_id: int, deadline_time: datetime) -> PoolEntry:
        now = self._clock()
        if not self._repository.insert_pool_entry(booking_id, now, ensure_utc(deadline_time)):
            entry = self._require_entry(booking_id)
            raise AlreadyPooledError(
                f"Booking {booking_id} is already pooled with status {entry.pool_status.value}"
            )
        logger.info(
            "Booking added to pool | booking_id=%s | deadline=%s",
            booking_id,
            ensure_utc(deadline_time).isoformat(),
        )
        return self._require_entry(booking_id)

    def mark_as_ready(self, booking_id: int) -> None:
        self._transition(booking_id, PoolStatus.READY)
        logger.info("Pool entry expedited | booking_id=%s", booking_id)

    def mark_as_processing(self, booking_id: int) -> PoolEntry:
        """Claim an entry for processing; only one concurrent caller can win."""
        claimed = self._repository.transition_pool_status(
            booking_id,
            sources_for(PoolStatus.PROCESSING),
            PoolStatus.PROCESSING,
            increment_attempts=True,
            processing_started_at=self._clock(),
        )
        if not claimed:
            entry = self._require_entry(booking_id)
            raise NotClaimableError(
                f"Booking {booking_id} cannot be claimed from status {entry.pool_status.value}"
            )
        return self._require_entry(booking_id)

    def remove_from_pool(self, booking_id: int) -> bool:
        """Clear all pool fields. Returns ``False`` when there was nothing to clear."""
        removed = self._repository.clear_pool_fields(booking_id)
        if removed:
            logger.info("Booking removed from pool | booking_id=%s", booking_id)
        return removed

    def reset_processing_status(self, booking_id: int) -> None:
        self._transition(booking_id, PoolStatus.WAITING, (PoolStatus.PROCESSING,))
        logger.info("Processing status reset | booking_id=%s", booking_id)

    def mark_as_failed(self, booking_id: int) -> None:
        self._transition(booking_id, PoolStatus.FAILED)
        logger.warning("Pool entry marked failed | booking_id=%s", booking_id)

    def release_after_error(
        self,
        booking_id: int,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> PoolStatus:
        policy = retry_policy or self.default_retry_policy()
        status = self._repository.release_processing(booking_id, policy.max_attempts)
        if status is None:
            entry = self._require_entry(booking_id)
            raise InvalidTransitionError(
                f"Booking {booking_id} is not processing (status {entry.pool_status.value})"
            )
        logger.info(
            "Pool entry released after error | booking_id=%s | status=%s",
            booking_id,
            status.value,
        )
        return status

    def requeue_failed_entry(self, booking_id: int) -> None:
        self._transition(booking_id, PoolStatus.WAITING, (PoolStatus.FAILED,))
        logger.info("Failed entry requeued | booking_id=%s", booking_id)

    def retry_failed_entries(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        include_exhausted: bool = False,
    ) -> int:
        policy = retry_policy or self.default_retry_policy()
        attempted_before = None
        if policy.backoff_minutes > 0 and not include_exhausted:
            attempted_before = self._clock() - timedelta(minutes=policy.backoff_minutes)
        count = self._repository.requeue_failed_entries(
            max_attempts=policy.max_attempts,
            attempted_before=attempted_before,
            include_exhausted=include_exhausted,
        )
        logger.info(
            "Failed entries requeued | count=%s | include_exhausted=%s",
            count,
            include_exhausted,
        )
        return count

    def _transition(
        self,
        booking_id: int,
        target: PoolStatus,
        sources: Optional[tuple[PoolStatus, ...]] = None,
    ) -> None:
        """Move to ``target`` from any table-listed source, or only from ``sources``."""
        if sources is None:
            sources = sources_for(target)
        illegal = [source.value for source in sources if not can_transition(source, target)]
        if illegal:
            raise InvalidTransitionError(
                f"Transition table does not allow {', '.join(illegal)} -> {target.value}"
            )
        if not self._repository.transition_pool_status(booking_id, sources, target):
            entry = self._require_entry(booking_id)
            raise InvalidTransitionError(
                f"Booking {booking_id} cannot move from {entry.pool_status.value} to {target.value}"
            )

    # --- Read-only queries ---

    def get_pool_stats(self) -> PoolStats:
        return self._repository.get_pool_stats(self._clock())

    def get_all_pool_entries(self) -> list[PoolEntry]:
        return self._repository.list_pool_entries()

    def get_pool_entry(self, booking_id: int) -> PoolEntry:
        return self._require_entry(booking_id)

    def get_ready_for_assignment(self) -> list[PoolEntry]:
        return self._repository.list_ready_entries(self._clock())

    def get_deadline_entries(self) -> list[PoolEntry]:
        return self._repository.list_deadline_entries(self._clock())

    def get_failed_entries(self) -> list[PoolEntry]:
        return self._repository.list_pool_entries(PoolStatus.FAILED)

    def get_processing_entries(self) -> list[PoolEntry]:
        return self._repository.list_pool_entries(PoolStatus.PROCESSING)
