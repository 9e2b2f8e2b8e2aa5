"""HTTP controller layer for pool administration, processing and monitoring."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import (
    get_booking_pool,
    get_daily_processor,
    get_pool_engine,
    get_recovery_manager,
)
from backend.domain.models import PoolStatus
from backend.services.daily_processor import DailyPoolProcessor
from backend.services.pool_engine import BatchResult, PoolProcessingEngine
from backend.services.pool_service import (
    AlreadyPooledError,
    BookingNotFoundError,
    BookingPool,
    PoolError,
)
from backend.services.recovery_service import PoolErrorRecoveryManager
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["pool"])


class AddToPoolRequest(BaseModel):
    deadline_time: datetime


class PoolEntryResponse(BaseModel):
    booking_id: int
    meeting_type: str
    time_start: datetime
    time_end: datetime
    pool_status: PoolStatus
    pool_entry_time: datetime | None
    pool_deadline_time: datetime | None
    pool_processing_attempts: int = Field(ge=0)
    pool_processing_started_at: datetime | None
    priority_value: int


class PoolStatsResponse(BaseModel):
    total_in_pool: int = Field(ge=0)
    waiting: int = Field(ge=0)
    ready_for_processing: int = Field(ge=0)
    currently_processing: int = Field(ge=0)
    failed_entries: int = Field(ge=0)
    oldest_entry: datetime | None


class ProcessingStatusResponse(BaseModel):
    pool_size: int = Field(ge=0)
    ready_for_processing: int = Field(ge=0)
    deadline_entries: int = Field(ge=0)
    failed_entries: int = Field(ge=0)
    currently_processing: int = Field(ge=0)
    auto_assign_enabled: bool


class HealthResponse(BaseModel):
    is_healthy: bool
    warnings: list[str]
    errors: list[str]
    checked_at: datetime
    stuck_booking_ids: list[int]


class RemoveResponse(BaseModel):
    booking_id: int
    removed: bool


class AdmissionResponse(BaseModel):
    booking_id: int
    decision: str
    reason: str
    interpreter_id: str | None
    deadline: datetime | None


class ProcessRequest(BaseModel):
    trigger: Literal["ready", "deadline", "emergency"] = "ready"


class OutcomeResponse(BaseModel):
    booking_id: int
    status: str
    processing_type: str
    reason: str
    interpreter_id: str | None
    score: float | None
    attempts: int


class BatchResponse(BaseModel):
    batch_id: str
    processing_type: str
    started_at: datetime
    finished_at: datetime
    auto_assign_enabled: bool
    processed: int
    assigned: int
    failed: int
    retried: int
    skipped: int
    outcomes: list[OutcomeResponse]


class RetryFailedRequest(BaseModel):
    include_exhausted: bool = False


class RetryFailedResponse(BaseModel):
    requeued: int = Field(ge=0)


class RecoveryEntryResponse(BaseModel):
    booking_id: int
    status: str
    reason: str
    interpreter_id: str | None


class RecoverResponse(BaseModel):
    reset_stuck_booking_ids: list[int]
    outcomes: list[RecoveryEntryResponse]


class DailyRunResponse(BaseModel):
    batch_id: str
    started_at: datetime
    finished_at: datetime
    skipped: bool
    reason: str
    admitted: int
    recovered_stuck: int
    processed: int
    assigned: int
    failed: int
    retried: int
    batches: list[BatchResponse]


class DailyStatusResponse(BaseModel):
    is_running: bool
    run_in_progress: bool
    interval_hours: float
    last_run_at: datetime | None
    next_run_at: datetime | None
    last_result: DailyRunResponse | None
    processing_needed: bool


class DailyStatisticsDay(BaseModel):
    date: str
    runs: int
    processed_count: int
    assigned_count: int
    failed_count: int
    retried_count: int
    skipped_count: int
    error_count: int
    assignment_rate: float = Field(ge=0.0, le=1.0)


class DailyStatisticsResponse(BaseModel):
    lookback_days: int
    days: list[DailyStatisticsDay]
    totals: dict[str, int]


def _batch_response(result: BatchResult) -> BatchResponse:
    return BatchResponse(**result.to_dict())


def _pool_error_to_http(exc: PoolError) -> HTTPException:
    if isinstance(exc, BookingNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


# Static routes are declared before the ``/pool/{booking_id}`` routes.


@router.get("/pool/stats", response_model=PoolStatsResponse)
async def get_pool_stats(pool: BookingPool = Depends(get_booking_pool)) -> PoolStatsResponse:
    return PoolStatsResponse(**pool.get_pool_stats().to_dict())


@router.get("/pool/entries", response_model=list[PoolEntryResponse])
async def list_pool_entries(
    pool_status: PoolStatus | None = Query(default=None, alias="status"),
    pool: BookingPool = Depends(get_booking_pool),
) -> list[PoolEntryResponse]:
    if pool_status is PoolStatus.NONE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="status must be one of waiting, ready, processing, failed",
        )
    entries = pool.get_all_pool_entries()
    if pool_status is not None:
        entries = [entry for entry in entries if entry.pool_status is pool_status]
    return [PoolEntryResponse(**entry.to_dict()) for entry in entries]


@router.get("/pool/status", response_model=ProcessingStatusResponse)
async def get_processing_status(
    engine: PoolProcessingEngine = Depends(get_pool_engine),
) -> ProcessingStatusResponse:
    return ProcessingStatusResponse(**engine.get_processing_status())


@router.get("/pool/health", response_model=HealthResponse)
async def get_pool_health(
    recovery: PoolErrorRecoveryManager = Depends(get_recovery_manager),
) -> HealthResponse:
    return HealthResponse(**recovery.perform_health_check().to_dict())


@router.post("/pool/process", response_model=BatchResponse)
async def process_pool(
    payload: ProcessRequest | None = None,
    engine: PoolProcessingEngine = Depends(get_pool_engine),
) -> BatchResponse:
    trigger = payload.trigger if payload is not None else "ready"
    try:
        if trigger == "deadline":
            result = engine.process_deadline_entries()
        elif trigger == "emergency":
            result = engine.process_emergency_override()
        else:
            result = engine.process_ready_entries()
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected pool processing failure | trigger=%s", trigger)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal pool processing error",
        ) from exc
    return _batch_response(result)


@router.post("/pool/retry-failed", response_model=RetryFailedResponse)
async def retry_failed_entries(
    payload: RetryFailedRequest | None = None,
    pool: BookingPool = Depends(get_booking_pool),
    recovery: PoolErrorRecoveryManager = Depends(get_recovery_manager),
) -> RetryFailedResponse:
    include_exhausted = payload.include_exhausted if payload is not None else False
    count = pool.retry_failed_entries(recovery.retry_policy, include_exhausted=include_exhausted)
    return RetryFailedResponse(requeued=count)


@router.post("/pool/recover", response_model=RecoverResponse)
async def recover_pool(
    recovery: PoolErrorRecoveryManager = Depends(get_recovery_manager),
) -> RecoverResponse:
    reset_ids = recovery.recover_stuck_entries()
    outcomes = recovery.process_with_error_recovery()
    return RecoverResponse(
        reset_stuck_booking_ids=reset_ids,
        outcomes=[
            RecoveryEntryResponse(
                booking_id=outcome.booking_id,
                status=outcome.status.value,
                reason=outcome.reason,
                interpreter_id=outcome.interpreter_id,
            )
            for outcome in outcomes
        ],
    )


@router.get("/pool/daily-processor", response_model=DailyStatusResponse)
async def get_daily_processor_status(
    processor: DailyPoolProcessor = Depends(get_daily_processor),
) -> DailyStatusResponse:
    return DailyStatusResponse(**processor.get_status())


@router.post("/pool/daily-processor/run", response_model=DailyRunResponse)
async def run_daily_processor(
    processor: DailyPoolProcessor = Depends(get_daily_processor),
) -> DailyRunResponse:
    try:
        result = processor.process_daily_pool_now()
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected daily pool run failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal daily pool run error",
        ) from exc
    return DailyRunResponse(**result.to_dict())


@router.get("/pool/daily-processor/statistics", response_model=DailyStatisticsResponse)
async def get_daily_statistics(
    days: int | None = Query(default=None, ge=1, le=365),
    processor: DailyPoolProcessor = Depends(get_daily_processor),
) -> DailyStatisticsResponse:
    return DailyStatisticsResponse(**processor.get_daily_processing_statistics(days))


@router.post(
    "/pool/{booking_id}",
    response_model=PoolEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_to_pool(
    booking_id: int,
    payload: AddToPoolRequest,
    pool: BookingPool = Depends(get_booking_pool),
) -> PoolEntryResponse:
    try:
        entry = pool.add_to_pool(booking_id, payload.deadline_time)
    except AlreadyPooledError as exc:
        raise _pool_error_to_http(exc) from exc
    except BookingNotFoundError as exc:
        raise _pool_error_to_http(exc) from exc
    return PoolEntryResponse(**entry.to_dict())


@router.delete("/pool/{booking_id}", response_model=RemoveResponse)
async def remove_from_pool(
    booking_id: int,
    pool: BookingPool = Depends(get_booking_pool),
) -> RemoveResponse:
    return RemoveResponse(booking_id=booking_id, removed=pool.remove_from_pool(booking_id))


@router.post("/pool/{booking_id}/expedite", response_model=PoolEntryResponse)
async def expedite_entry(
    booking_id: int,
    pool: BookingPool = Depends(get_booking_pool),
) -> PoolEntryResponse:
    try:
        pool.mark_as_ready(booking_id)
        entry = pool.get_pool_entry(booking_id)
    except PoolError as exc:
        raise _pool_error_to_http(exc) from exc
    return PoolEntryResponse(**entry.to_dict())


@router.post("/bookings/{booking_id}/admit", response_model=AdmissionResponse)
async def admit_booking(
    booking_id: int,
    engine: PoolProcessingEngine = Depends(get_pool_engine),
) -> AdmissionResponse:
    try:
        result = engine.admit_booking(booking_id)
    except PoolError as exc:
        raise _pool_error_to_http(exc) from exc
    return AdmissionResponse(**result.to_dict())
