"""Dependencies wiring the payout gateway and session factory into routes."""

from __future__ import annotations

from fastapi import Request

from rewards_api.db.session import async_session
from rewards_api.jobs.settlement import SessionFactory
from rewards_api.services.payouts import PayoutGateway, build_payout_gateway


def get_payout_gateway(request: Request) -> PayoutGateway:
    gateway = getattr(request.app.state, "payout_gateway", None)
    if gateway is None:
        gateway = build_payout_gateway()
        request.app.state.payout_gateway = gateway
    return gateway


def get_session_factory() -> SessionFactory:
    return async_session
