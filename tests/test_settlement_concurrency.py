from __future__ import annotations

import asyncio

import pytest

from rewards_api.jobs.settlement import run_redemption_settlement
from rewards_api.models import Earner
from rewards_api.models.redemption import PayoutMethod, RedemptionStatus
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.services.errors import InsufficientPointsError
from rewards_api.services.payouts import PayoutInstruction, PayoutReceipt, PayoutStatusReport, StaticPayoutGateway
from rewards_api.services.redemptions import RedemptionLifecycle


class _RacingGateway:
    """Marks the redemption processed from another session before accepting the payout."""

    def __init__(self, session_factory, settings) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._inner = StaticPayoutGateway()

    async def submit(self, instruction: PayoutInstruction) -> PayoutReceipt:
        async with self._session_factory() as session:
            await RedemptionLifecycle(session, settings=self._settings).mark_processed(
                instruction.redemption_id, "pout_other", "processing"
            )
            await session.commit()
        return await self._inner.submit(instruction)

    async def check_status(self, external_payout_id: str) -> PayoutStatusReport:
        return await self._inner.check_status(external_payout_id)


@pytest.mark.asyncio
async def test_concurrent_redemptions_never_overdraw(file_session_factory, make_file_earner, rewards_settings) -> None:
    earner = await make_file_earner(total_points=500)

    async def attempt() -> str:
        async with file_session_factory() as session:
            lifecycle = RedemptionLifecycle(session, settings=rewards_settings)
            try:
                await lifecycle.create(earner.id, 300, PayoutMethod.UPI, "asha@okhdfc")
            except InsufficientPointsError:
                await session.rollback()
                return "insufficient"
            await session.commit()
            return "ok"

    outcomes = await asyncio.gather(*(attempt() for _ in range(5)))

    assert sorted(outcomes) == ["insufficient"] * 4 + ["ok"]
    async with file_session_factory() as session:
        stored = await session.get(Earner, earner.id)
        history = await RedemptionLifecycle(session, settings=rewards_settings).list_for_earner(earner.id)
    assert stored.redeemed_points == 300
    assert stored.redeemed_points <= stored.total_points
    assert len(history) == 1


@pytest.mark.asyncio
async def test_parallel_settlement_submits_each_request_once(
    file_session_factory, make_file_earner, rewards_settings, sandbox_gateway
) -> None:
    earner = await make_file_earner(total_points=1200)
    async with file_session_factory() as session:
        lifecycle = RedemptionLifecycle(session, settings=rewards_settings)
        for _ in range(12):
            await lifecycle.create(earner.id, 100, PayoutMethod.UPI, "asha@okhdfc")
        await session.commit()

    summary = await run_redemption_settlement(
        session_factory=file_session_factory,
        gateway=sandbox_gateway,
        settings=rewards_settings,
        triggered_by="test",
        max_concurrency=4,
    )

    assert summary["pending"] == 12
    assert summary["processed"] == 12
    assert summary["failed"] == 0
    assert len(sandbox_gateway.submitted) == 12
    assert len({instruction.reference_id for instruction in sandbox_gateway.submitted}) == 12

    async with file_session_factory() as session:
        history = await RedemptionLifecycle(session, settings=rewards_settings).list_for_earner(earner.id)
        stored = await session.get(Earner, earner.id)
    assert {record.status for record in history} == {RedemptionStatus.PROCESSED}
    assert stored.redeemed_points == 1200


@pytest.mark.asyncio
async def test_payout_accepted_after_record_moved_is_flagged(
    file_session_factory, make_file_earner, rewards_settings
) -> None:
    earner = await make_file_earner(total_points=500)
    async with file_session_factory() as session:
        record = await RedemptionLifecycle(session, settings=rewards_settings).create(
            earner.id, 200, PayoutMethod.UPI, "asha@okhdfc"
        )
        await session.commit()

    summary = await run_redemption_settlement(
        session_factory=file_session_factory,
        gateway=_RacingGateway(file_session_factory, rewards_settings),
        settings=rewards_settings,
        triggered_by="test",
    )

    assert summary["skipped"] == 1
    assert summary["processed"] == 0
    assert summary["failed"] == 0
    async with file_session_factory() as session:
        stored = await RedemptionLifecycle(session, settings=rewards_settings).get(record.id)
    assert stored.status == RedemptionStatus.PROCESSED
    assert stored.external_payout_id == "pout_other"
    snapshot = get_redemption_store().snapshot()
    assert snapshot.settlement_totals["needs_manual_reconciliation"] == 1
    assert snapshot.events.last_ambiguous_redemption_id == str(record.id)
