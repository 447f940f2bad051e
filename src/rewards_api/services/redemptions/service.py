"""Inbound facade for earner redemption operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import Settings, get_settings
from rewards_api.models.redemption import PayoutMethod, RedemptionRequest, RedemptionStatus
from rewards_api.services.ledger import PointsBalance, PointsLedger
from rewards_api.services.payouts import PayoutGateway, build_payout_gateway

from .lifecycle import RedemptionLifecycle
from .reconciler import RedemptionStatusReconciler

# Status labels shown to earners; a processed payout is still in flight for them.
_PUBLIC_STATUS = {
    RedemptionStatus.PENDING: "pending",
    RedemptionStatus.PROCESSED: "processing",
    RedemptionStatus.COMPLETED: "completed",
    RedemptionStatus.FAILED: "failed",
}


def public_status(record: RedemptionRequest) -> str:
    return _PUBLIC_STATUS[RedemptionStatus(record.status)]


@dataclass(slots=True)
class PointsSummary:
    """Balance view with redemption history."""

    earner_id: UUID
    balance: PointsBalance
    redemptions: Sequence[RedemptionRequest]


class RedemptionService:
    """Compose the ledger, lifecycle and reconciler for request handlers."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        gateway: PayoutGateway | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings or get_settings()
        self._gateway = gateway
        self._ledger = PointsLedger(db_session)
        self._lifecycle = RedemptionLifecycle(db_session, ledger=self._ledger, settings=self._settings)

    async def create_redemption(
        self,
        earner_id: UUID,
        points: int,
        method: PayoutMethod | str,
        destination_details: Any,
    ) -> RedemptionRequest:
        return await self._lifecycle.create(earner_id, points, method, destination_details)

    async def get_redemption_status(self, request_id: UUID) -> RedemptionRequest:
        """Return the record, polling the gateway first when it is in flight."""

        reconciler = RedemptionStatusReconciler(
            self._db,
            self._resolve_gateway(),
            lifecycle=self._lifecycle,
        )
        return await reconciler.reconcile(request_id)

    async def list_redemptions(self, earner_id: UUID) -> Sequence[RedemptionRequest]:
        await self._ledger.balance(earner_id)
        return await self._lifecycle.list_for_earner(earner_id)

    async def points_summary(self, earner_id: UUID) -> PointsSummary:
        balance = await self._ledger.balance(earner_id)
        redemptions = await self._lifecycle.list_for_earner(earner_id)
        return PointsSummary(earner_id=earner_id, balance=balance, redemptions=redemptions)

    async def award_points(self, earner_id: UUID, points: int) -> PointsBalance:
        await self._ledger.award(earner_id, points)
        return await self._ledger.balance(earner_id)

    def _resolve_gateway(self) -> PayoutGateway:
        if self._gateway is None:
            self._gateway = build_payout_gateway(self._settings)
        return self._gateway


__all__ = ["PointsSummary", "RedemptionService", "public_status"]
