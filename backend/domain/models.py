"""Domain models for the deferred interpreter assignment pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AssignmentMode(str, Enum):
    BALANCE = "BALANCE"
    URGENT = "URGENT"
    NORMAL = "NORMAL"
    CUSTOM = "CUSTOM"


class MeetingType(str, Enum):
    DR = "DR"
    VIP = "VIP"
    WEEKLY = "Weekly"
    GENERAL = "General"
    OTHER = "Other"


class PoolStatus(str, Enum):
    """Pool sub-state of a booking. ``NONE`` is persisted as NULL."""

    NONE = "none"
    WAITING = "waiting"
    READY = "ready"
    PROCESSING = "processing"
    FAILED = "failed"

    @classmethod
    def from_db(cls, value: Optional[str]) -> "PoolStatus":
        if value is None:
            return cls.NONE
        return cls(value)

    def to_db(self) -> Optional[str]:
        if self is PoolStatus.NONE:
            return None
        return self.value


class AdmissionDecision(str, Enum):
    ASSIGNED = "ASSIGNED"
    POOLED = "POOLED"
    DEFERRED = "DEFERRED"
    SKIPPED = "SKIPPED"


class ProcessingType(str, Enum):
    THRESHOLD = "THRESHOLD"
    DEADLINE = "DEADLINE"
    EMERGENCY = "EMERGENCY"
    RECOVERY = "RECOVERY"


class OutcomeStatus(str, Enum):
    ASSIGNED = "assigned"
    FAILED = "failed"
    RETRY = "retry"
    SKIPPED = "skipped"


class RecoveryStatus(str, Enum):
    ASSIGNED = "assigned"
    RECOVERED = "recovered"
    STILL_FAILED = "stillFailed"


@dataclass(frozen=True)
class AssignmentPolicy:
    auto_assign_enabled: bool
    mode: AssignmentMode
    fairness_window_days: int
    max_gap_hours: float
    w_fair: float
    w_urgency: float
    w_lrs: float
    dr_consecutive_penalty: float

    def to_dict(self) -> dict[str, bool | int | float | str]:
        return {
            "auto_assign_enabled": self.auto_assign_enabled,
            "mode": self.mode.value,
            "fairness_window_days": self.fairness_window_days,
            "max_gap_hours": self.max_gap_hours,
            "w_fair": self.w_fair,
            "w_urgency": self.w_urgency,
            "w_lrs": self.w_lrs,
            "dr_consecutive_penalty": self.dr_consecutive_penalty,
        }


@dataclass(frozen=True)
class MeetingTypePriority:
    meeting_type: MeetingType
    priority_value: int
    urgent_threshold_days: int
    general_threshold_days: int


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry rules handed to the pool and the recovery manager."""

    max_attempts: int = 3
    backoff_minutes: int = 0


@dataclass(frozen=True)
class Booking:
    booking_id: int
    meeting_type: MeetingType
    time_start: datetime
    time_end: datetime
    booking_status: str
    interpreter_id: Optional[str] = None


@dataclass(frozen=True)
class PoolEntry:
    booking_id: int
    meeting_type: MeetingType
    time_start: datetime
    time_end: datetime
    pool_status: PoolStatus
    pool_entry_time: Optional[datetime]
    pool_deadline_time: Optional[datetime]
    pool_processing_attempts: int
    pool_processing_started_at: Optional[datetime] = None
    interpreter_id: Optional[str] = None
    booking_status: str = "waiting"
    priority_value: int = 1

    def to_dict(self) -> dict[str, object]:
        return {
            "booking_id": self.booking_id,
            "meeting_type": self.meeting_type.value,
            "time_start": self.time_start.isoformat(),
            "time_end": self.time_end.isoformat(),
            "pool_status": self.pool_status.value,
            "pool_entry_time": _iso(self.pool_entry_time),
            "pool_deadline_time": _iso(self.pool_deadline_time),
            "pool_processing_attempts": self.pool_processing_attempts,
            "pool_processing_started_at": _iso(self.pool_processing_started_at),
            "priority_value": self.priority_value,
        }


@dataclass(frozen=True)
class PoolStats:
    total_in_pool: int
    waiting: int
    ready_for_processing: int
    currently_processing: int
    failed_entries: int
    oldest_entry: Optional[datetime]

    def to_dict(self) -> dict[str, object]:
        return {
            "total_in_pool": self.total_in_pool,
            "waiting": self.waiting,
            "ready_for_processing": self.ready_for_processing,
            "currently_processing": self.currently_processing,
            "failed_entries": self.failed_entries,
            "oldest_entry": _iso(self.oldest_entry),
        }


@dataclass(frozen=True)
class WorkloadHistory:
    """Read-only workload snapshot shared by every scoring call of one pass."""

    as_of: datetime
    window_days: int
    hours_by_interpreter: dict[str, float]
    last_assignment_at: dict[str, datetime] = field(default_factory=dict)
    dr_assignments: dict[str, tuple[datetime, ...]] = field(default_factory=dict)

    @property
    def interpreter_ids(self) -> list[str]:
        return sorted(self.hours_by_interpreter)


@dataclass(frozen=True)
class CandidateScore:
    interpreter_id: str
    eligible: bool
    fairness: float
    urgency: float
    rotation: float
    dr_penalty: float
    total: float
    current_hours: float
    projected_gap_hours: float
    reason: Optional[str] = None


@dataclass(frozen=True)
class ProcessingOutcome:
    booking_id: int
    status: OutcomeStatus
    processing_type: ProcessingType
    reason: str
    interpreter_id: Optional[str] = None
    score: Optional[float] = None
    attempts: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "booking_id": self.booking_id,
            "status": self.status.value,
            "processing_type": self.processing_type.value,
            "reason": self.reason,
            "interpreter_id": self.interpreter_id,
            "score": self.score,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class RecoveryOutcome:
    booking_id: int
    status: RecoveryStatus
    reason: str
    interpreter_id: Optional[str] = None


@dataclass(frozen=True)
class HealthReport:
    is_healthy: bool
    warnings: list[str]
    errors: list[str]
    checked_at: datetime
    stuck_booking_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "is_healthy": self.is_healthy,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "checked_at": self.checked_at.isoformat(),
            "stuck_booking_ids": list(self.stuck_booking_ids),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
