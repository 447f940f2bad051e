from __future__ import annotations

from uuid import uuid4

import httpx
import pytest

from rewards_api.core.settings import settings
from rewards_api.services.payouts import GatewayErrorKind


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture(autouse=True)
def _single_settlement_slot(monkeypatch):
    monkeypatch.setattr(settings, "settlement_max_concurrency", 1)
    monkeypatch.setattr(settings, "operator_api_key", "")


@pytest.mark.asyncio
async def test_create_redemption_debits_points(app_with_db, make_earner) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        response = await client.post(
            f"/api/v1/earners/{earner.id}/redemptions",
            json={"points": 200, "method": "upi", "destinationDetails": {"upiId": "Asha@OKHDFC"}},
        )
        summary = await client.get(f"/api/v1/earners/{earner.id}/points")

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["lifecycleStatus"] == "pending"
    assert body["method"] == "upi"
    assert body["destination"] == "*******hdfc"
    assert body["referenceId"].startswith("rdm_")
    assert body["pointsRefunded"] is False

    assert summary.status_code == 200
    balance = summary.json()
    assert balance["totalPoints"] == 500
    assert balance["redeemedPoints"] == 200
    assert balance["availablePoints"] == 300
    assert [item["id"] for item in balance["redemptions"]] == [body["id"]]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"points": 600, "method": "upi", "destinationDetails": "asha@okhdfc"},
        {"points": 50, "method": "upi", "destinationDetails": "asha@okhdfc"},
        {"points": 200, "method": "wallet", "destinationDetails": "asha@okhdfc"},
        {"points": 200, "method": "cheque", "destinationDetails": "asha@okhdfc"},
    ],
)
async def test_invalid_redemptions_are_rejected(app_with_db, make_earner, payload) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        response = await client.post(f"/api/v1/earners/{earner.id}/redemptions", json=payload)
        summary = await client.get(f"/api/v1/earners/{earner.id}/points")

    assert response.status_code == 400
    assert summary.json()["availablePoints"] == 500
    assert summary.json()["redemptions"] == []


@pytest.mark.asyncio
async def test_unknown_earner_and_redemption_return_404(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        create = await client.post(
            f"/api/v1/earners/{uuid4()}/redemptions",
            json={"points": 200, "method": "upi", "destinationDetails": "asha@okhdfc"},
        )
        history = await client.get(f"/api/v1/earners/{uuid4()}/redemptions")
        status = await client.get(f"/api/v1/redemptions/{uuid4()}")

    assert create.status_code == 404
    assert history.status_code == 404
    assert status.status_code == 404


@pytest.mark.asyncio
async def test_settlement_run_and_status_reconciliation(app_with_db, make_earner, sandbox_gateway) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        created = (
            await client.post(
                f"/api/v1/earners/{earner.id}/redemptions",
                json={"points": 200, "method": "wallet", "destinationDetails": "+91 98765 43210"},
            )
        ).json()

        run = await client.post("/api/v1/settlement/runs", json={"triggeredBy": "ops"})
        processing = await client.get(f"/api/v1/redemptions/{created['id']}")

        sandbox_gateway.settle(processing.json()["externalPayoutId"])
        completed = await client.get(f"/api/v1/redemptions/{created['id']}")
        runs = await client.get("/api/v1/settlement/runs")

    assert run.status_code == 200
    assert run.json()["processed"] == 1
    assert run.json()["pending"] == 1

    assert processing.json()["status"] == "processing"
    assert processing.json()["lifecycleStatus"] == "processed"

    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    assert completed.json()["completedAt"] is not None

    assert runs.status_code == 200
    assert runs.json()[0]["triggeredBy"] == "ops"
    assert runs.json()[0]["processedCount"] == 1


@pytest.mark.asyncio
async def test_rejected_payout_is_visible_as_failed(app_with_db, make_earner, sandbox_gateway) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        created = (
            await client.post(
                f"/api/v1/earners/{earner.id}/redemptions",
                json={"points": 200, "method": "upi", "destinationDetails": "asha@okhdfc"},
            )
        ).json()
        sandbox_gateway.failures[created["referenceId"]] = GatewayErrorKind.REJECTED

        await client.post("/api/v1/settlement/runs")
        status = await client.get(f"/api/v1/redemptions/{created['id']}")
        summary = await client.get(f"/api/v1/earners/{earner.id}/points")

    assert status.json()["status"] == "failed"
    assert status.json()["failureKind"] == "rejected"
    assert status.json()["pointsRefunded"] is True
    assert summary.json()["availablePoints"] == 500


@pytest.mark.asyncio
async def test_status_poll_returns_503_when_gateway_unreachable(app_with_db, make_earner, sandbox_gateway) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        created = (
            await client.post(
                f"/api/v1/earners/{earner.id}/redemptions",
                json={"points": 200, "method": "upi", "destinationDetails": "asha@okhdfc"},
            )
        ).json()
        await client.post("/api/v1/settlement/runs")
        sandbox_gateway.unreachable_polls = True
        response = await client.get(f"/api/v1/redemptions/{created['id']}")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_award_points_requires_operator_key(app_with_db, make_earner, monkeypatch) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=0)
    monkeypatch.setattr(settings, "operator_api_key", "ops-secret")

    async with _client(app) as client:
        denied = await client.post(f"/api/v1/earners/{earner.id}/points", json={"points": 300})
        awarded = await client.post(
            f"/api/v1/earners/{earner.id}/points",
            json={"points": 300},
            headers={"X-API-Key": "ops-secret"},
        )
        runs = await client.get("/api/v1/settlement/runs")

    assert denied.status_code == 401
    assert awarded.status_code == 200
    assert awarded.json()["availablePoints"] == 300
    assert runs.status_code == 401


@pytest.mark.asyncio
async def test_health_and_readiness(app_with_db) -> None:
    app, _ = app_with_db

    async with _client(app) as client:
        health = await client.get("/healthz")
        ready = await client.get("/api/v1/readyz")

    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert ready.status_code == 200
    payload = ready.json()
    assert payload["components"]["settlement_scheduler"]["status"] == "disabled"
    assert payload["components"]["payout_gateway"]["status"] == "degraded"
    assert payload["status"] == "degraded"


@pytest.mark.asyncio
async def test_observability_snapshot_reports_creation(app_with_db, make_earner) -> None:
    app, _ = app_with_db
    earner = await make_earner(total_points=500)

    async with _client(app) as client:
        await client.post(
            f"/api/v1/earners/{earner.id}/redemptions",
            json={"points": 200, "method": "upi", "destinationDetails": "asha@okhdfc"},
        )
        snapshot = await client.get("/api/v1/observability/redemptions")
        scheduler = await client.get("/api/v1/observability/scheduler")

    assert snapshot.status_code == 200
    assert snapshot.json()["creation"]["created"] == 1
    assert scheduler.json()["jobs"] == {}
