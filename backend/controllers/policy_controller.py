"""HTTP controller layer for the assignment policy and meeting-type thresholds."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from backend.controllers.dependencies import get_policy_store
from backend.domain.constraints import PolicyValidationError
from backend.domain.models import AssignmentMode, MeetingTypePriority
from backend.services.policy_service import PolicyStore
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/policy", tags=["policy"])


class PolicyResponse(BaseModel):
    auto_assign_enabled: bool
    mode: AssignmentMode
    fairness_window_days: int
    max_gap_hours: float
    w_fair: float
    w_urgency: float
    w_lrs: float
    dr_consecutive_penalty: float


class PolicyUpdateRequest(BaseModel):
    """Partial update; range checks happen in the store so lock rules apply first."""

    model_config = ConfigDict(extra="forbid")

    auto_assign_enabled: bool | None = None
    mode: AssignmentMode | None = None
    fairness_window_days: int | None = None
    max_gap_hours: float | None = None
    w_fair: float | None = None
    w_urgency: float | None = None
    w_lrs: float | None = None
    dr_consecutive_penalty: float | None = None


class ModeRequest(BaseModel):
    mode: AssignmentMode


class MeetingPriorityResponse(BaseModel):
    meeting_type: str
    priority_value: int
    urgent_threshold_days: int
    general_threshold_days: int


class MeetingPriorityUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    priority_value: int | None = Field(default=None, ge=1, le=10)
    urgent_threshold_days: int | None = Field(default=None, ge=0, le=365)
    general_threshold_days: int | None = Field(default=None, ge=1, le=1000)


def _priority_response(priority: MeetingTypePriority) -> MeetingPriorityResponse:
    return MeetingPriorityResponse(
        meeting_type=priority.meeting_type.value,
        priority_value=priority.priority_value,
        urgent_threshold_days=priority.urgent_threshold_days,
        general_threshold_days=priority.general_threshold_days,
    )


@router.get("", response_model=PolicyResponse)
async def get_policy(store: PolicyStore = Depends(get_policy_store)) -> PolicyResponse:
    return PolicyResponse(**store.load().to_dict())


@router.patch("", response_model=PolicyResponse)
async def update_policy(
    payload: PolicyUpdateRequest,
    store: PolicyStore = Depends(get_policy_store),
) -> PolicyResponse:
    partial = payload.model_dump(exclude_none=True)
    if not partial:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one policy field is required",
        )
    try:
        policy = store.update(partial)
    except PolicyValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected policy update failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal policy update error",
        ) from exc
    return PolicyResponse(**policy.to_dict())


@router.post("/mode", response_model=PolicyResponse)
async def apply_mode(
    payload: ModeRequest,
    store: PolicyStore = Depends(get_policy_store),
) -> PolicyResponse:
    try:
        policy = store.apply_mode(payload.mode)
    except PolicyValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return PolicyResponse(**policy.to_dict())


@router.get("/meeting-types", response_model=list[MeetingPriorityResponse])
async def list_meeting_priorities(
    store: PolicyStore = Depends(get_policy_store),
) -> list[MeetingPriorityResponse]:
    return [_priority_response(priority) for priority in store.list_meeting_priorities()]


@router.patch("/meeting-types/{meeting_type}", response_model=MeetingPriorityResponse)
async def update_meeting_priority(
    meeting_type: str,
    payload: MeetingPriorityUpdateRequest,
    store: PolicyStore = Depends(get_policy_store),
) -> MeetingPriorityResponse:
    partial = payload.model_dump(exclude_none=True)
    if not partial:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one priority field is required",
        )
    try:
        priority = store.update_meeting_priority(meeting_type, partial)
    except PolicyValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    return _priority_response(priority)
