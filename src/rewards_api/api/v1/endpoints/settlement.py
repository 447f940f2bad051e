"""Operator endpoints for triggering and auditing settlement runs."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.api.dependencies.security import require_operator_api_key
from rewards_api.api.dependencies.settlement import get_payout_gateway, get_session_factory
from rewards_api.db.session import get_session
from rewards_api.jobs.settlement import SessionFactory, list_settlement_runs, run_redemption_settlement
from rewards_api.services.payouts import PayoutGateway


router = APIRouter(prefix="/settlement", tags=["Settlement"])


class SettlementTriggerRequest(BaseModel):
    limit: Optional[int] = Field(None, gt=0, description="Maximum pending requests to attempt")
    triggeredBy: str = Field("operator", description="Label stored on the run record")


class SettlementRunSummary(BaseModel):
    runId: UUID
    pending: int
    processed: int
    failed: int
    skipped: int


class SettlementRunResponse(BaseModel):
    id: UUID
    triggeredBy: str
    status: str
    pendingCount: int
    processedCount: int
    failedCount: int
    skippedCount: int
    errorMessage: Optional[str]
    metadata: Optional[dict[str, Any]]
    startedAt: Optional[datetime]
    completedAt: Optional[datetime]


@router.post(
    "/runs",
    response_model=SettlementRunSummary,
    dependencies=[Depends(require_operator_api_key)],
    summary="Run a settlement pass now",
)
async def trigger_settlement_run(
    payload: SettlementTriggerRequest | None = None,
    session_factory: SessionFactory = Depends(get_session_factory),
    gateway: PayoutGateway = Depends(get_payout_gateway),
) -> SettlementRunSummary:
    request = payload or SettlementTriggerRequest()
    summary = await run_redemption_settlement(
        session_factory=session_factory,
        gateway=gateway,
        triggered_by=request.triggeredBy,
        limit=request.limit,
    )
    return SettlementRunSummary(
        runId=summary["run_id"],
        pending=summary["pending"],
        processed=summary["processed"],
        failed=summary["failed"],
        skipped=summary["skipped"],
    )


@router.get(
    "/runs",
    response_model=List[SettlementRunResponse],
    dependencies=[Depends(require_operator_api_key)],
    summary="Recent settlement runs",
)
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> List[SettlementRunResponse]:
    runs = await list_settlement_runs(session, limit=limit)
    return [
        SettlementRunResponse(
            id=run.id,
            triggeredBy=run.triggered_by,
            status=run.status,
            pendingCount=run.pending_count,
            processedCount=run.processed_count,
            failedCount=run.failed_count,
            skippedCount=run.skipped_count,
            errorMessage=run.error_message,
            metadata=run.metadata_json,
            startedAt=run.started_at,
            completedAt=run.completed_at,
        )
        for run in runs
    ]
