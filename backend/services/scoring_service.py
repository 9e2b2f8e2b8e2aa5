"""Candidate scoring for interpreter assignment.

All functions here are pure: the same booking, policy, workload snapshot and
``now`` always produce the same scores and the same ranking.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Mapping, Sequence, Union

import numpy as np

from backend.domain.constraints import forbids_consecutive_dr
from backend.domain.models import (
    AssignmentPolicy,
    Booking,
    CandidateScore,
    MeetingType,
    MeetingTypePriority,
    PoolEntry,
    WorkloadHistory,
)
from backend.utils.clock import ensure_utc


ScorableBooking = Union[Booking, PoolEntry]


def booking_duration_hours(booking: ScorableBooking) -> float:
    return max((booking.time_end - booking.time_start).total_seconds() / 3600.0, 0.0)


def compute_urgency(
    time_start: datetime,
    now: datetime,
    priority: MeetingTypePriority,
) -> float:
    """1.0 inside the urgent threshold, decaying linearly to 0.0 at the general one."""
    days_until = (ensure_utc(time_start) - ensure_utc(now)).total_seconds() / 86400.0
    urgent = float(priority.urgent_threshold_days)
    general = float(priority.general_threshold_days)
    if days_until <= urgent:
        return 1.0
    if days_until >= general:
        return 0.0
    return float((general - days_until) / (general - urgent))


def compute_rotation(
    interpreter_id: str,
    history: WorkloadHistory,
    window_days: int,
    now: datetime,
) -> float:
    last_assigned = history.last_assignment_at.get(interpreter_id)
    if last_assigned is None:
        return 1.0
    days_since = (ensure_utc(now) - last_assigned).total_seconds() / 86400.0
    return float(np.clip(days_since / float(window_days), 0.0, 1.0))


def has_consecutive_dr(
    interpreter_id: str,
    booking: ScorableBooking,
    history: WorkloadHistory,
    window_days: int,
) -> bool:
    """True when the candidate served the last DR meeting before this DR booking.

    "Last" is global: across every interpreter's DR assignments inside the
    window. Interpreters sharing the latest start time are all consecutive.
    """
    if booking.meeting_type is not MeetingType.DR:
        return False
    window_start = booking.time_start - timedelta(days=window_days)
    previous: dict[str, datetime] = {}
    for candidate_id, starts in history.dr_assignments.items():
        in_window = [start for start in starts if window_start <= start < booking.time_start]
        if in_window:
            previous[candidate_id] = max(in_window)
    if interpreter_id not in previous:
        return False
    return previous[interpreter_id] == max(previous.values())


def _min_excluding_self(hours: np.ndarray) -> np.ndarray:
    """For every index, the minimum of the other entries (``inf`` when alone)."""
    if hours.size <= 1:
        return np.full(hours.shape, np.inf)
    order = np.argsort(hours, kind="stable")
    lowest, second_lowest = hours[order[0]], hours[order[1]]
    result = np.full(hours.shape, lowest)
    result[order[0]] = second_lowest
    return result


def score_candidates(
    booking: ScorableBooking,
    policy: AssignmentPolicy,
    history: WorkloadHistory,
    priority: MeetingTypePriority,
    now: datetime,
    candidate_ids: Iterable[str] | None = None,
    conflicts: Mapping[str, int] | None = None,
) -> list[CandidateScore]:
    """Score every candidate against one booking using vectorised arithmetic.

    ``conflicts`` maps interpreters already booked over this booking's time
    to the overlapping booking id; those candidates are never eligible.
    """
    interpreter_ids = sorted(candidate_ids) if candidate_ids is not None else history.interpreter_ids
    if not interpreter_ids:
        return []
    conflicts = conflicts or {}

    hours = np.array(
        [history.hours_by_interpreter.get(interpreter_id, 0.0) for interpreter_id in interpreter_ids],
        dtype=float,
    )
    duration = booking_duration_hours(booking)
    projected = hours + duration
    min_post_assignment = np.minimum(_min_excluding_self(hours), projected)
    gap = projected - min_post_assignment
    eligible = gap <= policy.max_gap_hours

    mean_hours = float(hours.mean())
    fairness = np.clip((mean_hours - hours) / policy.max_gap_hours, -1.0, 1.0)
    urgency = compute_urgency(booking.time_start, now, priority)
    rotation = np.array(
        [
            compute_rotation(interpreter_id, history, policy.fairness_window_days, now)
            for interpreter_id in interpreter_ids
        ],
        dtype=float,
    )
    consecutive_dr = np.array(
        [
            has_consecutive_dr(interpreter_id, booking, history, policy.fairness_window_days)
            for interpreter_id in interpreter_ids
        ],
        dtype=bool,
    )
    dr_penalty = np.where(consecutive_dr, policy.dr_consecutive_penalty, 0.0)
    dr_blocked = consecutive_dr & forbids_consecutive_dr(policy.mode)
    conflicted = np.array([interpreter_id in conflicts for interpreter_id in interpreter_ids], dtype=bool)
    eligible = eligible & ~dr_blocked & ~conflicted
    total = (
        policy.w_fair * fairness
        + policy.w_urgency * urgency
        + policy.w_lrs * rotation
        + dr_penalty
    )

    scores: list[CandidateScore] = []
    for index, interpreter_id in enumerate(interpreter_ids):
        reason = None
        if conflicted[index]:
            reason = f"time conflict with booking {conflicts[interpreter_id]}"
        elif dr_blocked[index]:
            reason = f"consecutive DR assignment blocked in {policy.mode.value} mode"
        elif not eligible[index]:
            reason = (
                f"workload gap {gap[index]:.2f}h exceeds max_gap_hours {policy.max_gap_hours:g}"
            )
        scores.append(
            CandidateScore(
                interpreter_id=interpreter_id,
                eligible=bool(eligible[index]),
                fairness=float(fairness[index]),
                urgency=float(urgency),
                rotation=float(rotation[index]),
                dr_penalty=float(dr_penalty[index]),
                total=float(total[index]),
                current_hours=float(hours[index]),
                projected_gap_hours=float(gap[index]),
                reason=reason,
            )
        )
    return scores


def score(
    booking: ScorableBooking,
    interpreter_id: str,
    policy: AssignmentPolicy,
    history: WorkloadHistory,
    priority: MeetingTypePriority,
    now: datetime,
    conflicts: Mapping[str, int] | None = None,
) -> CandidateScore:
    """Score a single interpreter; the rest of the roster still shapes fairness and the gap."""
    candidate_ids = set(history.interpreter_ids)
    candidate_ids.add(interpreter_id)
    for candidate in score_candidates(booking, policy, history, priority, now, candidate_ids, conflicts):
        if candidate.interpreter_id == interpreter_id:
            return candidate
    raise KeyError(interpreter_id)


def rank_candidates(
    booking: ScorableBooking,
    policy: AssignmentPolicy,
    history: WorkloadHistory,
    priority: MeetingTypePriority,
    now: datetime,
    conflicts: Mapping[str, int] | None = None,
) -> list[CandidateScore]:
    """Eligible candidates, best first; ties resolve by interpreter id."""
    eligible = [
        candidate
        for candidate in score_candidates(booking, policy, history, priority, now, conflicts=conflicts)
        if candidate.eligible
    ]
    return sorted(eligible, key=lambda candidate: (-candidate.total, candidate.interpreter_id))


def order_entries(entries: Sequence[PoolEntry]) -> list[PoolEntry]:
    """Batch order: higher meeting priority first, then the earliest deadline."""
    far_future = datetime.max.replace(tzinfo=None)
    return sorted(
        entries,
        key=lambda entry: (
            -entry.priority_value,
            entry.pool_deadline_time.replace(tzinfo=None) if entry.pool_deadline_time else far_future,
            entry.booking_id,
        ),
    )
