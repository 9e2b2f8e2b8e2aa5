"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from backend.services.daily_processor import DailyPoolProcessor
from backend.services.policy_service import PolicyStore
from backend.services.pool_engine import PoolProcessingEngine
from backend.services.pool_service import BookingPool
from backend.services.recovery_service import PoolErrorRecoveryManager


def _require_state(request: Request, attribute: str, label: str) -> Any:
    service = getattr(request.app.state, attribute, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_policy_store(request: Request) -> PolicyStore:
    return _require_state(request, "policy_store", "Policy store")


def get_booking_pool(request: Request) -> BookingPool:
    return _require_state(request, "booking_pool", "Booking pool")


def get_pool_engine(request: Request) -> PoolProcessingEngine:
    return _require_state(request, "pool_engine", "Pool processing engine")


def get_recovery_manager(request: Request) -> PoolErrorRecoveryManager:
    return _require_state(request, "recovery_manager", "Recovery manager")


def get_daily_processor(request: Request) -> DailyPoolProcessor:
    return _require_state(request, "daily_processor", "Daily pool processor")
