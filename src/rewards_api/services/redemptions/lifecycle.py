"""Redemption lifecycle transitions guarded by conditional updates."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import Settings, get_settings
from rewards_api.models.redemption import (
    PayoutMethod,
    RedemptionFailureKind,
    RedemptionRequest,
    RedemptionStatus,
)
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.services.errors import (
    EarnerNotFoundError,
    InsufficientPointsError,
    InvalidMethodForDestinationError,
    InvalidRedemptionTransitionError,
    RedemptionBelowMinimumError,
    RedemptionNotFoundError,
)
from rewards_api.services.ledger import PointsLedger
from rewards_api.services.payouts.destinations import InvalidDestinationError, normalize_destination
from rewards_api.services.payouts.gateway import reference_id_for


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionLifecycle:
    """Owns redemption records and the points movements tied to their status.

    Every transition is an ``UPDATE ... WHERE status IN (expected)`` so that
    overlapping settlement runs and status polls cannot both move a record.
    The ledger is only touched here: a debit on create and at most one credit
    when a record fails. Callers commit.
    """

    _ALLOWED_TRANSITIONS: dict[RedemptionStatus, set[RedemptionStatus]] = {
        RedemptionStatus.PENDING: {RedemptionStatus.PROCESSED, RedemptionStatus.FAILED},
        RedemptionStatus.PROCESSED: {RedemptionStatus.COMPLETED, RedemptionStatus.FAILED},
        RedemptionStatus.COMPLETED: set(),
        RedemptionStatus.FAILED: set(),
    }

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointsLedger(db_session)
        self._settings = settings or get_settings()
        self._observability = get_redemption_store()

    @classmethod
    def allowed_sources(cls, target: RedemptionStatus) -> set[RedemptionStatus]:
        return {source for source, targets in cls._ALLOWED_TRANSITIONS.items() if target in targets}

    async def create(
        self,
        earner_id: UUID,
        points: int,
        method: PayoutMethod | str,
        destination_details: Any,
    ) -> RedemptionRequest:
        """Debit ``points`` and persist a pending redemption.

        Nothing is written unless the debit succeeds.
        """

        requested = int(points)
        minimum = self._settings.min_redemption_points
        if requested < minimum:
            self._observability.record_creation_rejected("below_minimum")
            raise RedemptionBelowMinimumError(requested, minimum)

        resolved_method = self._resolve_method(method)
        try:
            destination = normalize_destination(resolved_method, destination_details)
        except InvalidDestinationError as exc:
            self._observability.record_creation_rejected("invalid_destination")
            raise InvalidMethodForDestinationError(resolved_method.value, str(exc)) from exc

        try:
            await self._ledger.debit(earner_id, requested)
        except InsufficientPointsError:
            self._observability.record_creation_rejected("insufficient_points")
            raise
        except EarnerNotFoundError:
            self._observability.record_creation_rejected("earner_not_found")
            raise

        request_id = uuid4()
        record = RedemptionRequest(
            id=request_id,
            earner_id=earner_id,
            points=requested,
            method=resolved_method,
            destination_details=destination,
            status=RedemptionStatus.PENDING,
            reference_id=reference_id_for(request_id),
            settlement_attempts=0,
            points_refunded=False,
        )
        self._db.add(record)
        await self._db.flush()
        await self._db.refresh(record)

        self._observability.record_created()
        logger.info(
            "Created redemption request",
            redemption_id=str(record.id),
            earner_id=str(earner_id),
            points=requested,
            method=resolved_method.value,
            destination=destination,
        )
        return record

    async def mark_processed(
        self,
        request_id: UUID,
        external_payout_id: str,
        external_status: str,
        *,
        response: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> RedemptionRequest:
        now = _utcnow()
        values: dict[str, Any] = {
            "status": RedemptionStatus.PROCESSED,
            "external_payout_id": external_payout_id,
            "external_status": external_status,
            "processed_at": now,
            "settlement_claimed_at": None,
        }
        if response is not None:
            values["gateway_response"] = dict(response)
        if idempotency_key is not None:
            values["idempotency_key"] = idempotency_key

        if await self._transition(request_id, RedemptionStatus.PROCESSED, values):
            logger.info(
                "Redemption processed by gateway",
                redemption_id=str(request_id),
                external_payout_id=external_payout_id,
                external_status=external_status,
            )
            return await self._load(request_id)

        record = await self._load(request_id)
        if record.status == RedemptionStatus.PROCESSED and record.external_payout_id == external_payout_id:
            return record
        raise InvalidRedemptionTransitionError(record.status.value, RedemptionStatus.PROCESSED.value)

    async def mark_failed(
        self,
        request_id: UUID,
        reason: str,
        *,
        kind: RedemptionFailureKind | None = None,
        response: Mapping[str, Any] | None = None,
    ) -> RedemptionRequest:
        """Fail the record and return its points exactly once."""

        now = _utcnow()
        values: dict[str, Any] = {
            "status": RedemptionStatus.FAILED,
            "failure_reason": reason,
            "failure_kind": kind,
            "failed_at": now,
            "processed_at": func.coalesce(RedemptionRequest.processed_at, now),
            "settlement_claimed_at": None,
        }
        if response is not None:
            values["gateway_response"] = dict(response)

        transitioned = await self._transition(request_id, RedemptionStatus.FAILED, values)
        record = await self._load(request_id)
        if not transitioned and record.status != RedemptionStatus.FAILED:
            raise InvalidRedemptionTransitionError(record.status.value, RedemptionStatus.FAILED.value)

        if transitioned:
            logger.warning(
                "Redemption failed",
                redemption_id=str(request_id),
                reason=reason,
                failure_kind=kind.value if kind else None,
            )

        if await self._refund_once(record):
            record = await self._load(request_id)
        return record

    async def mark_completed(
        self,
        request_id: UUID,
        external_status: str | None = None,
        *,
        response: Mapping[str, Any] | None = None,
    ) -> RedemptionRequest:
        now = _utcnow()
        values: dict[str, Any] = {
            "status": RedemptionStatus.COMPLETED,
            "completed_at": now,
            "last_reconciled_at": now,
        }
        if external_status is not None:
            values["external_status"] = external_status
        if response is not None:
            values["gateway_response"] = dict(response)

        if await self._transition(request_id, RedemptionStatus.COMPLETED, values):
            logger.info("Redemption completed", redemption_id=str(request_id), external_status=external_status)
            return await self._load(request_id)

        record = await self._load(request_id)
        if record.status == RedemptionStatus.COMPLETED:
            return record
        raise InvalidRedemptionTransitionError(record.status.value, RedemptionStatus.COMPLETED.value)

    async def update_external_status(
        self,
        request_id: UUID,
        external_status: str,
        *,
        response: Mapping[str, Any] | None = None,
    ) -> bool:
        """Persist a new gateway status on a processed record without moving it."""

        values: dict[str, Any] = {"external_status": external_status, "last_reconciled_at": _utcnow()}
        if response is not None:
            values["gateway_response"] = dict(response)
        stmt = (
            update(RedemptionRequest)
            .where(
                RedemptionRequest.id == request_id,
                RedemptionRequest.status == RedemptionStatus.PROCESSED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return bool(result.rowcount)

    async def stamp_reconciled(self, request_id: UUID) -> None:
        stmt = (
            update(RedemptionRequest)
            .where(RedemptionRequest.id == request_id)
            .values(last_reconciled_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)

    async def claim_for_settlement(self, request_id: UUID, *, claim_ttl_seconds: int) -> bool:
        """Reserve a pending record for one settlement attempt.

        Returns ``False`` when another runner holds a live claim or the record
        already left ``pending``.
        """

        now = _utcnow()
        stale_before = now - timedelta(seconds=max(claim_ttl_seconds, 0))
        stmt = (
            update(RedemptionRequest)
            .where(
                RedemptionRequest.id == request_id,
                RedemptionRequest.status == RedemptionStatus.PENDING,
                or_(
                    RedemptionRequest.settlement_claimed_at.is_(None),
                    RedemptionRequest.settlement_claimed_at < stale_before,
                ),
            )
            .values(
                settlement_claimed_at=now,
                settlement_attempts=RedemptionRequest.settlement_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return bool(result.rowcount)

    async def get(self, request_id: UUID) -> RedemptionRequest:
        return await self._load(request_id)

    async def list_for_earner(self, earner_id: UUID, *, limit: int | None = None) -> Sequence[RedemptionRequest]:
        stmt = (
            select(RedemptionRequest)
            .where(RedemptionRequest.earner_id == earner_id)
            .order_by(RedemptionRequest.created_at.desc(), RedemptionRequest.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return result.scalars().all()

    async def list_pending(self, *, limit: int | None = None) -> Sequence[RedemptionRequest]:
        stmt = (
            select(RedemptionRequest)
            .where(RedemptionRequest.status == RedemptionStatus.PENDING)
            .order_by(RedemptionRequest.created_at.asc(), RedemptionRequest.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._db.execute(stmt)
        return result.scalars().all()

    def _resolve_method(self, method: PayoutMethod | str) -> PayoutMethod:
        try:
            resolved = PayoutMethod(method)
        except ValueError as exc:
            self._observability.record_creation_rejected("invalid_method")
            raise InvalidMethodForDestinationError(str(method), f"Unsupported payout method: {method}") from exc

        enabled: Iterable[str] = self._settings.redemption_methods_enabled
        if resolved.value not in enabled:
            self._observability.record_creation_rejected("method_disabled")
            raise InvalidMethodForDestinationError(resolved.value, f"Payout method {resolved.value} is disabled")
        return resolved

    async def _transition(
        self,
        request_id: UUID,
        target: RedemptionStatus,
        values: Mapping[str, Any],
    ) -> bool:
        sources = self.allowed_sources(target)
        stmt = (
            update(RedemptionRequest)
            .where(RedemptionRequest.id == request_id, RedemptionRequest.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return bool(result.rowcount)

    async def _refund_once(self, record: RedemptionRequest) -> bool:
        flip = (
            update(RedemptionRequest)
            .where(
                RedemptionRequest.id == record.id,
                RedemptionRequest.status == RedemptionStatus.FAILED,
                RedemptionRequest.points_refunded.is_(False),
            )
            .values(points_refunded=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(flip)
        if not result.rowcount:
            return False

        await self._ledger.credit(record.earner_id, int(record.points))
        self._observability.record_refund()
        logger.info(
            "Refunded redemption points",
            redemption_id=str(record.id),
            earner_id=str(record.earner_id),
            points=int(record.points),
        )
        return True

    async def _load(self, request_id: UUID) -> RedemptionRequest:
        record = await self._db.get(RedemptionRequest, request_id, populate_existing=True)
        if record is None:
            raise RedemptionNotFoundError(request_id)
        return record


__all__ = ["RedemptionLifecycle"]
