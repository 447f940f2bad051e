from __future__ import annotations

import pytest

from rewards_api.models.redemption import PayoutMethod, RedemptionFailureKind, RedemptionStatus
from rewards_api.observability.redemptions import get_redemption_store
from rewards_api.services.errors import ReconciliationUnavailableError
from rewards_api.services.ledger import PointsLedger
from rewards_api.services.redemptions import RedemptionLifecycle, RedemptionStatusReconciler


async def _processed(session_factory, settings, earner, gateway, payout_id="pout_recon01"):
    async with session_factory() as session:
        lifecycle = RedemptionLifecycle(session, settings=settings)
        record = await lifecycle.create(earner.id, 200, PayoutMethod.UPI, "asha@okhdfc")
        await lifecycle.mark_processed(record.id, payout_id, "processing")
        await session.commit()
    gateway.statuses[payout_id] = "processing"
    return record


async def _reconcile(session_factory, settings, gateway, record):
    async with session_factory() as session:
        lifecycle = RedemptionLifecycle(session, settings=settings)
        reconciled = await RedemptionStatusReconciler(session, gateway, lifecycle=lifecycle).reconcile(record.id)
        await session.commit()
        return reconciled


async def _available(session_factory, earner) -> int:
    async with session_factory() as session:
        return (await PointsLedger(session).balance(earner.id)).available


@pytest.mark.asyncio
async def test_unchanged_status_only_stamps_reconciliation(
    session_factory, make_earner, rewards_settings, sandbox_gateway
) -> None:
    earner = await make_earner(total_points=500)
    record = await _processed(session_factory, rewards_settings, earner, sandbox_gateway)

    first = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)
    second = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    assert first.status == second.status == RedemptionStatus.PROCESSED
    assert second.external_status == "processing"
    assert second.last_reconciled_at is not None
    assert await _available(session_factory, earner) == 300
    assert get_redemption_store().snapshot().reconciliation_totals["unchanged"] == 2


@pytest.mark.asyncio
async def test_new_gateway_status_is_recorded(session_factory, make_earner, rewards_settings, sandbox_gateway) -> None:
    earner = await make_earner(total_points=500)
    record = await _processed(session_factory, rewards_settings, earner, sandbox_gateway)
    sandbox_gateway.statuses["pout_recon01"] = "queued"

    reconciled = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    assert reconciled.status == RedemptionStatus.PROCESSED
    assert reconciled.external_status == "queued"
    assert get_redemption_store().snapshot().reconciliation_totals["status_changed"] == 1


@pytest.mark.asyncio
async def test_settled_payout_completes_once(session_factory, make_earner, rewards_settings, sandbox_gateway) -> None:
    earner = await make_earner(total_points=500)
    record = await _processed(session_factory, rewards_settings, earner, sandbox_gateway)
    sandbox_gateway.settle("pout_recon01")

    completed = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)
    again = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    assert completed.status == RedemptionStatus.COMPLETED
    assert completed.external_status == "processed"
    assert completed.gateway_response == {"id": "pout_recon01", "status": "processed"}
    assert again.status == RedemptionStatus.COMPLETED
    assert await _available(session_factory, earner) == 300
    totals = get_redemption_store().snapshot().reconciliation_totals
    assert totals["completed"] == 1
    assert totals["skipped"] == 1


@pytest.mark.asyncio
async def test_reversed_payout_fails_and_refunds_once(
    session_factory, make_earner, rewards_settings, sandbox_gateway
) -> None:
    earner = await make_earner(total_points=500)
    record = await _processed(session_factory, rewards_settings, earner, sandbox_gateway)
    sandbox_gateway.settle("pout_recon01", status="reversed")

    failed = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)
    await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    assert failed.status == RedemptionStatus.FAILED
    assert failed.failure_kind == RedemptionFailureKind.GATEWAY_FAILED
    assert failed.points_refunded is True
    assert await _available(session_factory, earner) == 500
    assert get_redemption_store().snapshot().ledger_totals["refunds"] == 1


@pytest.mark.asyncio
async def test_unreachable_gateway_leaves_record_untouched(
    session_factory, make_earner, rewards_settings, sandbox_gateway
) -> None:
    earner = await make_earner(total_points=500)
    record = await _processed(session_factory, rewards_settings, earner, sandbox_gateway)
    sandbox_gateway.unreachable_polls = True

    with pytest.raises(ReconciliationUnavailableError):
        await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    async with session_factory() as session:
        stored = await RedemptionLifecycle(session, settings=rewards_settings).get(record.id)
    assert stored.status == RedemptionStatus.PROCESSED
    assert stored.external_status == "processing"
    assert get_redemption_store().snapshot().reconciliation_totals["unavailable"] == 1


@pytest.mark.asyncio
async def test_pending_record_is_not_polled(session_factory, make_earner, rewards_settings, sandbox_gateway) -> None:
    earner = await make_earner(total_points=500)
    async with session_factory() as session:
        record = await RedemptionLifecycle(session, settings=rewards_settings).create(
            earner.id, 200, PayoutMethod.UPI, "asha@okhdfc"
        )
        await session.commit()
    sandbox_gateway.unreachable_polls = True

    reconciled = await _reconcile(session_factory, rewards_settings, sandbox_gateway, record)

    assert reconciled.status == RedemptionStatus.PENDING
    assert get_redemption_store().snapshot().reconciliation_totals == {"skipped": 1}
