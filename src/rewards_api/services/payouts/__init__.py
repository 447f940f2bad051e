"""Payout gateway contract, destinations and provider selection."""

from __future__ import annotations

import httpx

from rewards_api.core.settings import Settings, get_settings

from .destinations import InvalidDestinationError, normalize_destination
from .gateway import (
    FAILED_STATUSES,
    SETTLED_STATUSES,
    GatewayErrorKind,
    PayoutGateway,
    PayoutGatewayError,
    PayoutInstruction,
    PayoutReceipt,
    PayoutStatusReport,
    reference_id_for,
)
from .providers import RazorpayPayoutGateway, StaticPayoutGateway

_SANDBOX_GATEWAY: StaticPayoutGateway | None = None


def build_payout_gateway(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> PayoutGateway:
    """Return the gateway selected by ``payout_gateway_provider``."""

    global _SANDBOX_GATEWAY
    resolved = settings or get_settings()
    if resolved.payout_gateway_provider == "razorpay":
        return RazorpayPayoutGateway.from_settings(resolved, http_client=http_client)
    # Sandbox payouts must stay pollable across requests in one process.
    if _SANDBOX_GATEWAY is None:
        _SANDBOX_GATEWAY = StaticPayoutGateway()
    return _SANDBOX_GATEWAY


__all__ = [
    "FAILED_STATUSES",
    "GatewayErrorKind",
    "InvalidDestinationError",
    "PayoutGateway",
    "PayoutGatewayError",
    "PayoutInstruction",
    "PayoutReceipt",
    "PayoutStatusReport",
    "RazorpayPayoutGateway",
    "SETTLED_STATUSES",
    "StaticPayoutGateway",
    "build_payout_gateway",
    "normalize_destination",
    "reference_id_for",
]
