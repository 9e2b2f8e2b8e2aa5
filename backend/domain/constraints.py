"""Domain-level validation rules, mode presets and the pool transition table."""

from __future__ import annotations

from dataclasses import dataclass

from backend.domain.models import (
    AssignmentMode,
    AssignmentPolicy,
    MeetingType,
    MeetingTypePriority,
    PoolStatus,
)


class PolicyValidationError(ValueError):
    """Raised when a policy or meeting-type priority violates its ranges."""


class PolicyLockedError(PolicyValidationError):
    """Raised when numeric fields are edited while a preset mode is active."""


@dataclass(frozen=True)
class ModePreset:
    fairness_window_days: int
    max_gap_hours: float
    w_fair: float
    w_urgency: float
    w_lrs: float
    dr_consecutive_penalty: float

    def as_fields(self) -> dict[str, int | float]:
        return {
            "fairness_window_days": self.fairness_window_days,
            "max_gap_hours": self.max_gap_hours,
            "w_fair": self.w_fair,
            "w_urgency": self.w_urgency,
            "w_lrs": self.w_lrs,
            "dr_consecutive_penalty": self.dr_consecutive_penalty,
        }


MODE_PRESETS: dict[AssignmentMode, ModePreset] = {
    AssignmentMode.BALANCE: ModePreset(
        fairness_window_days=60,
        max_gap_hours=2.0,
        w_fair=2.0,
        w_urgency=0.6,
        w_lrs=0.6,
        dr_consecutive_penalty=-0.8,
    ),
    AssignmentMode.URGENT: ModePreset(
        fairness_window_days=14,
        max_gap_hours=10.0,
        w_fair=0.5,
        w_urgency=2.5,
        w_lrs=0.2,
        dr_consecutive_penalty=-0.1,
    ),
    AssignmentMode.NORMAL: ModePreset(
        fairness_window_days=30,
        max_gap_hours=5.0,
        w_fair=1.2,
        w_urgency=0.8,
        w_lrs=0.3,
        dr_consecutive_penalty=-0.5,
    ),
}

# Modes in which serving two DR meetings in a row excludes the candidate
# instead of costing dr_consecutive_penalty.
CONSECUTIVE_DR_BLOCKING_MODES = frozenset({AssignmentMode.BALANCE})

NUMERIC_POLICY_FIELDS = frozenset(MODE_PRESETS[AssignmentMode.NORMAL].as_fields())
POLICY_FIELDS = NUMERIC_POLICY_FIELDS | {"auto_assign_enabled", "mode"}

DEFAULT_POLICY = AssignmentPolicy(
    auto_assign_enabled=True,
    mode=AssignmentMode.NORMAL,
    **MODE_PRESETS[AssignmentMode.NORMAL].as_fields(),
)

DEFAULT_MEETING_PRIORITIES: tuple[MeetingTypePriority, ...] = (
    MeetingTypePriority(MeetingType.DR, 5, 1, 7),
    MeetingTypePriority(MeetingType.VIP, 4, 2, 14),
    MeetingTypePriority(MeetingType.WEEKLY, 3, 3, 30),
    MeetingTypePriority(MeetingType.GENERAL, 2, 3, 30),
    MeetingTypePriority(MeetingType.OTHER, 1, 5, 45),
)

# Removal (any state -> NONE) is not listed; remove_from_pool clears
# the pool fields unconditionally.
POOL_TRANSITIONS: dict[PoolStatus, frozenset[PoolStatus]] = {
    PoolStatus.NONE: frozenset({PoolStatus.WAITING}),
    PoolStatus.WAITING: frozenset(
        {PoolStatus.READY, PoolStatus.PROCESSING, PoolStatus.FAILED}
    ),
    PoolStatus.READY: frozenset({PoolStatus.PROCESSING}),
    PoolStatus.PROCESSING: frozenset({PoolStatus.WAITING, PoolStatus.FAILED}),
    PoolStatus.FAILED: frozenset({PoolStatus.WAITING}),
}


def sources_for(target: PoolStatus) -> tuple[PoolStatus, ...]:
    """Return every status from which ``target`` may legally be entered."""
    return tuple(
        source
        for source, targets in POOL_TRANSITIONS.items()
        if target in targets
    )


def can_transition(source: PoolStatus, target: PoolStatus) -> bool:
    return target in POOL_TRANSITIONS.get(source, frozenset())


def preset_for(mode: AssignmentMode) -> ModePreset | None:
    return MODE_PRESETS.get(mode)


def forbids_consecutive_dr(mode: AssignmentMode) -> bool:
    return mode in CONSECUTIVE_DR_BLOCKING_MODES


def validate_policy(policy: AssignmentPolicy) -> None:
    if not isinstance(policy.mode, AssignmentMode):
        raise PolicyValidationError("mode must be one of BALANCE, URGENT, NORMAL, CUSTOM")
    if not 7 <= policy.fairness_window_days <= 90:
        raise PolicyValidationError("fairness_window_days must be between 7 and 90")
    if not 1.0 <= policy.max_gap_hours <= 100.0:
        raise PolicyValidationError("max_gap_hours must be between 1 and 100")
    for name in ("w_fair", "w_urgency", "w_lrs"):
        value = getattr(policy, name)
        if not 0.0 <= value <= 5.0:
            raise PolicyValidationError(f"{name} must be between 0 and 5")
    if not -2.0 <= policy.dr_consecutive_penalty <= 0.0:
        raise PolicyValidationError("dr_consecutive_penalty must be between -2 and 0")

    preset = preset_for(policy.mode)
    if preset is not None:
        for name, expected in preset.as_fields().items():
            if getattr(policy, name) != expected:
                raise PolicyLockedError(
                    f"{name} is locked to {expected} in {policy.mode.value} mode"
                )


def validate_meeting_priority(priority: MeetingTypePriority) -> None:
    if not 1 <= priority.priority_value <= 10:
        raise PolicyValidationError("priority_value must be between 1 and 10")
    if not 0 <= priority.urgent_threshold_days <= 365:
        raise PolicyValidationError("urgent_threshold_days must be between 0 and 365")
    if not 1 <= priority.general_threshold_days <= 1000:
        raise PolicyValidationError("general_threshold_days must be between 1 and 1000")
    if priority.urgent_threshold_days >= priority.general_threshold_days:
        raise PolicyValidationError(
            "urgent_threshold_days must be less than general_threshold_days"
        )
