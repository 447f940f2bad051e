"""Points ledger guarding earner balances with conditional updates."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.models.earner import Earner
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.services.errors import (
    EarnerNotFoundError,
    InsufficientPointsError,
    LedgerInvariantViolation,
)


@dataclass(slots=True)
class PointsBalance:
    total: int
    redeemed: int

    @property
    def available(self) -> int:
        return self.total - self.redeemed


def _require_positive(points: int) -> int:
    value = int(points)
    if value <= 0:
        raise ValueError("Ledger adjustments require a positive amount of points")
    return value


class PointsLedger:
    """Atomic debit/credit operations over the earner counters.

    Each mutation is a single ``UPDATE ... WHERE`` whose predicate encodes the
    invariant, so concurrent redemptions for one earner cannot both pass the
    availability check. Nothing here commits; callers own the transaction.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._observability = get_redemption_store()

    async def balance(self, earner_id: UUID) -> PointsBalance:
        stmt = select(Earner.total_points, Earner.redeemed_points).where(Earner.id == earner_id)
        row = (await self._db.execute(stmt)).one_or_none()
        if row is None:
            raise EarnerNotFoundError(earner_id)
        return PointsBalance(total=int(row.total_points or 0), redeemed=int(row.redeemed_points or 0))

    async def debit(self, earner_id: UUID, points: int) -> None:
        """Commit ``points`` to redemption if the earner can afford them."""

        amount = _require_positive(points)
        stmt = (
            update(Earner)
            .where(
                Earner.id == earner_id,
                Earner.total_points - Earner.redeemed_points >= amount,
            )
            .values(redeemed_points=Earner.redeemed_points + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            balance = await self.balance(earner_id)
            raise InsufficientPointsError(earner_id, requested=amount, available=balance.available)

        logger.info("Debited earner points", earner_id=str(earner_id), points=amount)

    async def credit(self, earner_id: UUID, points: int) -> None:
        """Return ``points`` to the earner's available balance (refunds only)."""

        amount = _require_positive(points)
        stmt = (
            update(Earner)
            .where(Earner.id == earner_id, Earner.redeemed_points >= amount)
            .values(redeemed_points=Earner.redeemed_points - amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount:
            logger.info("Credited earner points", earner_id=str(earner_id), points=amount)
            return

        balance = await self.balance(earner_id)
        clamp = (
            update(Earner)
            .where(Earner.id == earner_id)
            .values(redeemed_points=0)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(clamp)
        self._observability.record_invariant_violation()
        violation = LedgerInvariantViolation(
            f"Refund of {amount} points exceeds redeemed balance {balance.redeemed}"
        )
        logger.critical(
            "Ledger invariant violation while crediting points",
            earner_id=str(earner_id),
            points=amount,
            redeemed_points=balance.redeemed,
            error=str(violation),
        )

    async def award(self, earner_id: UUID, points: int) -> None:
        """Increase lifetime earned points."""

        amount = _require_positive(points)
        stmt = (
            update(Earner)
            .where(Earner.id == earner_id)
            .values(total_points=Earner.total_points + amount)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount == 0:
            raise EarnerNotFoundError(earner_id)
        logger.info("Awarded earner points", earner_id=str(earner_id), points=amount)


__all__ = [
    "EarnerNotFoundError",
    "InsufficientPointsError",
    "LedgerInvariantViolation",
    "PointsBalance",
    "PointsLedger",
]
