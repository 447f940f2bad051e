"""On-demand reconciliation of processed redemptions against the gateway."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.models.redemption import RedemptionFailureKind, RedemptionRequest, RedemptionStatus
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.services.errors import ReconciliationUnavailableError
from rewards_api.services.payouts.gateway import PayoutGateway, PayoutGatewayError

from .lifecycle import RedemptionLifecycle


class RedemptionStatusReconciler:
    """Poll the gateway for a processed redemption and apply the outcome.

    Only ``processed`` records with an external payout id are polled. A poll
    that returns the stored status leaves the record untouched apart from
    ``last_reconciled_at``, so repeated calls are idempotent.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PayoutGateway,
        *,
        lifecycle: RedemptionLifecycle | None = None,
    ) -> None:
        self._db = db_session
        self._gateway = gateway
        self._lifecycle = lifecycle or RedemptionLifecycle(db_session)
        self._observability = get_redemption_store()

    async def reconcile(self, request_id: UUID) -> RedemptionRequest:
        record = await self._lifecycle.get(request_id)
        if record.status != RedemptionStatus.PROCESSED or not record.external_payout_id:
            self._observability.record_reconciliation("skipped")
            return record
        previous_status = record.external_status

        try:
            report = await self._gateway.check_status(record.external_payout_id)
        except PayoutGatewayError as exc:
            self._observability.record_reconciliation("unavailable")
            logger.warning(
                "Payout status poll failed",
                redemption_id=str(request_id),
                external_payout_id=record.external_payout_id,
                kind=exc.kind.value,
                error=str(exc),
            )
            raise ReconciliationUnavailableError(
                f"Payout status for redemption {request_id} is temporarily unavailable"
            ) from exc

        if report.settled:
            self._observability.record_reconciliation("completed")
            return await self._lifecycle.mark_completed(request_id, report.external_status, response=report.raw)

        if report.failed:
            self._observability.record_reconciliation("failed")
            return await self._lifecycle.mark_failed(
                request_id,
                report.failure_reason,
                kind=RedemptionFailureKind.GATEWAY_FAILED,
                response=report.raw,
            )

        if report.external_status != previous_status:
            self._observability.record_reconciliation("status_changed")
            await self._lifecycle.update_external_status(
                request_id,
                report.external_status,
                response=report.raw,
            )
            logger.info(
                "Payout status changed",
                redemption_id=str(request_id),
                previous_status=previous_status,
                external_status=report.external_status,
            )
        else:
            self._observability.record_reconciliation("unchanged")
            await self._lifecycle.stamp_reconciled(request_id)

        return await self._lifecycle.get(request_id)


__all__ = ["RedemptionStatusReconciler"]
