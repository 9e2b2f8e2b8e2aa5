"""Assignment policy store with mode presets and meeting-type thresholds."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from backend.domain.constraints import (
    DEFAULT_MEETING_PRIORITIES,
    DEFAULT_POLICY,
    NUMERIC_POLICY_FIELDS,
    POLICY_FIELDS,
    PolicyLockedError,
    PolicyValidationError,
    preset_for,
    validate_meeting_priority,
    validate_policy,
)
from backend.domain.models import (
    AdmissionDecision,
    AssignmentMode,
    AssignmentPolicy,
    MeetingType,
    MeetingTypePriority,
)
from backend.repository.data_repository import DataRepository
from backend.utils.clock import ensure_utc
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_PRIORITY_FIELDS = frozenset(
    {"priority_value", "urgent_threshold_days", "general_threshold_days"}
)
_INTEGER_FIELDS = frozenset(
    {"fairness_window_days", "priority_value", "urgent_threshold_days", "general_threshold_days"}
)


def parse_mode(value: Any) -> AssignmentMode:
    if isinstance(value, AssignmentMode):
        return value
    try:
        return AssignmentMode(str(value).upper())
    except ValueError as exc:
        raise PolicyValidationError(
            "mode must be one of BALANCE, URGENT, NORMAL, CUSTOM"
        ) from exc


def parse_meeting_type(value: Any) -> MeetingType:
    if isinstance(value, MeetingType):
        return value
    try:
        return MeetingType(str(value))
    except ValueError as exc:
        allowed = ", ".join(member.value for member in MeetingType)
        raise PolicyValidationError(f"meeting_type must be one of {allowed}") from exc


def _coerce_number(name: str, value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PolicyValidationError(f"{name} must be a number")
    if name in _INTEGER_FIELDS:
        if int(value) != value:
            raise PolicyValidationError(f"{name} must be an integer")
        return int(value)
    return float(value)


class PolicyStore:
    """Holds the current policy as an immutable snapshot.

    Readers take the snapshot reference without locking. Writers serialize
    on ``_lock``, validate a full candidate policy, persist it and only then
    swap the reference, so a reader never observes a half-applied update.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._lock = threading.RLock()
        self._snapshot: Optional[AssignmentPolicy] = None
        self._priorities: Optional[dict[MeetingType, MeetingTypePriority]] = None

    def load(self) -> AssignmentPolicy:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with self._lock:
            if self._snapshot is None:
                stored = self._repository.load_policy()
                if stored is None:
                    stored = DEFAULT_POLICY
                    self._repository.save_policy(stored)
                    logger.info("Assignment policy row created with defaults")
                self._snapshot = stored
            return self._snapshot

    def update(self, partial: Mapping[str, Any]) -> AssignmentPolicy:
        unknown = sorted(set(partial) - POLICY_FIELDS)
        if unknown:
            raise PolicyValidationError(f"Unknown policy fields: {', '.join(unknown)}")

        with self._lock:
            current = self.load()
            mode = parse_mode(partial["mode"]) if "mode" in partial else current.mode
            numeric_updates = {
                name: _coerce_number(name, partial[name])
                for name in NUMERIC_POLICY_FIELDS
                if name in partial
            }

            preset = preset_for(mode)
            if preset is not None and "mode" in partial:
                numeric_fields = preset.as_fields()
            elif preset is not None and numeric_updates:
                raise PolicyLockedError(
                    f"Numeric fields are locked in {mode.value} mode; switch to CUSTOM to edit them"
                )
            else:
                numeric_fields = {
                    name: getattr(current, name) for name in NUMERIC_POLICY_FIELDS
                }
                numeric_fields.update(numeric_updates)

            auto_assign_enabled = current.auto_assign_enabled
            if "auto_assign_enabled" in partial:
                if not isinstance(partial["auto_assign_enabled"], bool):
                    raise PolicyValidationError("auto_assign_enabled must be a boolean")
                auto_assign_enabled = partial["auto_assign_enabled"]

            candidate = AssignmentPolicy(
                auto_assign_enabled=auto_assign_enabled,
                mode=mode,
                **numeric_fields,
            )
            validate_policy(candidate)
            self._repository.save_policy(candidate)
            self._snapshot = candidate

        logger.info(
            "Assignment policy updated | mode=%s | auto_assign=%s | fields=%s",
            candidate.mode.value,
            candidate.auto_assign_enabled,
            sorted(partial),
        )
        return candidate

    def apply_mode(self, mode: AssignmentMode | str) -> AssignmentPolicy:
        return self.update({"mode": parse_mode(mode)})

    # --- Meeting-type priorities ---

    def _load_priorities(self) -> dict[MeetingType, MeetingTypePriority]:
        priorities = self._priorities
        if priorities is not None:
            return priorities
        with self._lock:
            if self._priorities is None:
                loaded = {
                    priority.meeting_type: priority
                    for priority in DEFAULT_MEETING_PRIORITIES
                }
                for priority in self._repository.list_meeting_priorities():
                    loaded[priority.meeting_type] = priority
                self._priorities = loaded
            return self._priorities

    def list_meeting_priorities(self) -> list[MeetingTypePriority]:
        return sorted(
            self._load_priorities().values(),
            key=lambda priority: (-priority.priority_value, priority.meeting_type.value),
        )

    def get_meeting_priority(self, meeting_type: MeetingType | str) -> MeetingTypePriority:
        return self._load_priorities()[parse_meeting_type(meeting_type)]

    def update_meeting_priority(
        self,
        meeting_type: MeetingType | str,
        partial: Mapping[str, Any],
    ) -> MeetingTypePriority:
        resolved_type = parse_meeting_type(meeting_type)
        unknown = sorted(set(partial) - _PRIORITY_FIELDS)
        if unknown:
            raise PolicyValidationError(f"Unknown meeting priority fields: {', '.join(unknown)}")

        with self._lock:
            current = self.get_meeting_priority(resolved_type)
            candidate = replace(
                current,
                **{name: _coerce_number(name, value) for name, value in partial.items()},
            )
            validate_meeting_priority(candidate)
            self._repository.save_meeting_priority(candidate)
            priorities = dict(self._load_priorities())
            priorities[resolved_type] = candidate
            self._priorities = priorities

        logger.info(
            "Meeting priority updated | meeting_type=%s | priority=%s | urgent_days=%s | general_days=%s",
            resolved_type.value,
            candidate.priority_value,
            candidate.urgent_threshold_days,
            candidate.general_threshold_days,
        )
        return candidate

    # --- Threshold helpers used by admission ---

    def compute_deadline(self, time_start: datetime, meeting_type: MeetingType | str) -> datetime:
        """Latest point at which a pooled booking must be assigned."""
        priority = self.get_meeting_priority(meeting_type)
        lead_days = priority.urgent_threshold_days
        if self.load().mode is AssignmentMode.BALANCE:
            lead_days += 1
        return ensure_utc(time_start) - timedelta(days=lead_days)

    def classify_booking(
        self,
        time_start: datetime,
        meeting_type: MeetingType | str,
        now: datetime,
    ) -> AdmissionDecision:
        priority = self.get_meeting_priority(meeting_type)
        days_until = (ensure_utc(time_start) - ensure_utc(now)).total_seconds() / 86400.0
        if days_until <= priority.urgent_threshold_days:
            return AdmissionDecision.ASSIGNED
        if days_until <= priority.general_threshold_days:
            return AdmissionDecision.POOLED
        return AdmissionDecision.DEFERRED
