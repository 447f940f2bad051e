"""API endpoints for earner points and payout redemptions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.api.dependencies.security import require_operator_api_key
from rewards_api.api.dependencies.settlement import get_payout_gateway
from rewards_api.core.logging import mask_destination
from rewards_api.db.session import get_session
from rewards_api.models.redemption import RedemptionRequest
from rewards_api.services.errors import (
    EarnerNotFoundError,
    InsufficientPointsError,
    InvalidMethodForDestinationError,
    ReconciliationUnavailableError,
    RedemptionBelowMinimumError,
    RedemptionNotFoundError,
)
from rewards_api.services.payouts import PayoutGateway
from rewards_api.services.redemptions import RedemptionService, public_status


router = APIRouter(tags=["Redemptions"])


class RedemptionCreateRequest(BaseModel):
    points: int = Field(..., gt=0, description="Points to redeem")
    method: str = Field(..., description="Payout method: upi or wallet")
    destinationDetails: str | dict[str, Any] = Field(
        ..., description="UPI handle or wallet phone number, raw or as an object"
    )


class RedemptionResponse(BaseModel):
    id: UUID
    earnerId: UUID
    points: int
    method: str
    destination: str
    status: str
    lifecycleStatus: str
    referenceId: Optional[str]
    externalPayoutId: Optional[str]
    externalStatus: Optional[str]
    failureReason: Optional[str]
    failureKind: Optional[str]
    pointsRefunded: bool
    createdAt: Optional[datetime]
    processedAt: Optional[datetime]
    completedAt: Optional[datetime]
    failedAt: Optional[datetime]


class PointsSummaryResponse(BaseModel):
    earnerId: UUID
    totalPoints: int
    redeemedPoints: int
    availablePoints: int
    redemptions: List[RedemptionResponse]


class PointsAwardRequest(BaseModel):
    points: int = Field(..., gt=0, description="Earned points to add")


class PointsBalanceResponse(BaseModel):
    earnerId: UUID
    totalPoints: int
    redeemedPoints: int
    availablePoints: int


def _serialize_redemption(record: RedemptionRequest) -> RedemptionResponse:
    return RedemptionResponse(
        id=record.id,
        earnerId=record.earner_id,
        points=int(record.points),
        method=record.method.value,
        destination=mask_destination(record.destination_details),
        status=public_status(record),
        lifecycleStatus=record.status.value,
        referenceId=record.reference_id,
        externalPayoutId=record.external_payout_id,
        externalStatus=record.external_status,
        failureReason=record.failure_reason,
        failureKind=record.failure_kind.value if record.failure_kind else None,
        pointsRefunded=bool(record.points_refunded),
        createdAt=record.created_at,
        processedAt=record.processed_at,
        completedAt=record.completed_at,
        failedAt=record.failed_at,
    )


@router.post(
    "/earners/{earner_id}/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Redeem points for a payout",
)
async def create_redemption(
    earner_id: UUID,
    payload: RedemptionCreateRequest,
    session: AsyncSession = Depends(get_session),
) -> RedemptionResponse:
    service = RedemptionService(session)
    try:
        record = await service.create_redemption(
            earner_id,
            payload.points,
            payload.method,
            payload.destinationDetails,
        )
    except EarnerNotFoundError as exc:
        await session.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (InsufficientPointsError, RedemptionBelowMinimumError, InvalidMethodForDestinationError) as exc:
        await session.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    await session.commit()
    return _serialize_redemption(record)


@router.get(
    "/earners/{earner_id}/redemptions",
    response_model=List[RedemptionResponse],
    summary="List an earner's redemptions",
)
async def list_redemptions(
    earner_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    try:
        records = await RedemptionService(session).list_redemptions(earner_id)
    except EarnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [_serialize_redemption(record) for record in records]


@router.get(
    "/earners/{earner_id}/points",
    response_model=PointsSummaryResponse,
    summary="Points balance and redemption history",
)
async def get_points_summary(
    earner_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> PointsSummaryResponse:
    try:
        summary = await RedemptionService(session).points_summary(earner_id)
    except EarnerNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return PointsSummaryResponse(
        earnerId=summary.earner_id,
        totalPoints=summary.balance.total,
        redeemedPoints=summary.balance.redeemed,
        availablePoints=summary.balance.available,
        redemptions=[_serialize_redemption(record) for record in summary.redemptions],
    )


@router.post(
    "/earners/{earner_id}/points",
    response_model=PointsBalanceResponse,
    dependencies=[Depends(require_operator_api_key)],
    summary="Award earned points (operator)",
)
async def award_points(
    earner_id: UUID,
    payload: PointsAwardRequest,
    session: AsyncSession = Depends(get_session),
) -> PointsBalanceResponse:
    try:
        balance = await RedemptionService(session).award_points(earner_id, payload.points)
    except EarnerNotFoundError as exc:
        await session.rollback()
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    await session.commit()
    return PointsBalanceResponse(
        earnerId=earner_id,
        totalPoints=balance.total,
        redeemedPoints=balance.redeemed,
        availablePoints=balance.available,
    )


@router.get(
    "/redemptions/{request_id}",
    response_model=RedemptionResponse,
    summary="Redemption status, reconciled against the gateway",
)
async def get_redemption_status(
    request_id: UUID,
    session: AsyncSession = Depends(get_session),
    gateway: PayoutGateway = Depends(get_payout_gateway),
) -> RedemptionResponse:
    service = RedemptionService(session, gateway=gateway)
    try:
        record = await service.get_redemption_status(request_id)
    except RedemptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ReconciliationUnavailableError as exc:
        await session.rollback()
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    await session.commit()
    return _serialize_redemption(record)
