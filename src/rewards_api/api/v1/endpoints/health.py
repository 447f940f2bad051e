from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from rewards_api.core.settings import settings
from rewards_api.observability.scheduler import get_scheduler_store


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(request: Request) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    scheduler = getattr(request.app.state, "job_scheduler", None)
    if settings.settlement_scheduler_enabled and scheduler is not None:
        running = bool(getattr(scheduler, "is_running", False))
        scheduler_status: ComponentState = "ready" if running else "starting"
        detail = None if running else "Settlement scheduler not running"
        failing = [
            job_id
            for job_id, job in get_scheduler_store().snapshot().jobs.items()
            if job["totals"].get("consecutive_failures", 0) > 0
        ]
        if failing:
            scheduler_status = "error"
            detail = f"Jobs failing: {', '.join(failing)}"
            status = "error"
        elif not running:
            status = "degraded"
        components["settlement_scheduler"] = ComponentStatus(status=scheduler_status, detail=detail)
    else:
        components["settlement_scheduler"] = ComponentStatus(
            status="disabled",
            detail="Settlement scheduler disabled via settings",
        )

    worker = getattr(request.app.state, "settlement_worker", None)
    if settings.settlement_worker_enabled and worker is not None:
        running = bool(getattr(worker, "is_running", False))
        if not running and status == "ready":
            status = "degraded"
        components["settlement_worker"] = ComponentStatus(
            status="ready" if running else "starting",
            detail=None if running else "Settlement worker not running",
        )
    elif settings.settlement_scheduler_enabled:
        components["settlement_worker"] = ComponentStatus(status="disabled", detail="Managed by settlement scheduler")
    else:
        components["settlement_worker"] = ComponentStatus(
            status="disabled",
            detail="Settlement worker disabled via settings",
        )

    if settings.payout_gateway_provider == "razorpay":
        configured = all(
            (settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_account_number)
        )
        if not configured:
            status = "error"
        components["payout_gateway"] = ComponentStatus(
            status="ready" if configured else "error",
            detail="Razorpay credentials configured" if configured else "Razorpay credentials missing",
        )
    else:
        components["payout_gateway"] = ComponentStatus(
            status="degraded",
            detail="Sandbox payout gateway in use; no real payouts are sent",
        )
        if status == "ready":
            status = "degraded"

    return ReadinessPayload(status=status, components=components)
