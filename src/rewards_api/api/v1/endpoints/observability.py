"""Observability snapshots for redemption settlement and scheduling."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from rewards_api.api.dependencies.security import require_operator_api_key
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.observability.scheduler import get_scheduler_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_operator_api_key)],
)


@router.get("/redemptions", summary="Redemption settlement counters")
async def get_redemption_snapshot() -> dict[str, object]:
    return get_redemption_store().snapshot().as_dict()


@router.get("/scheduler", summary="Scheduled job counters")
async def get_scheduler_snapshot() -> dict[str, object]:
    return get_scheduler_store().snapshot().as_dict()
