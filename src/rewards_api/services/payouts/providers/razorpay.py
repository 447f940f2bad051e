"""Razorpay payouts adapter (composite payout API)."""

from __future__ import annotations

from typing import Any, Dict, Mapping
from uuid import uuid4

import httpx
from loguru import logger

from rewards_api.core.settings import Settings, get_settings
from rewards_api.models.redemption import PayoutMethod
from rewards_api.services.payouts.gateway import (
    FAILED_STATUSES,
    GatewayErrorKind,
    PayoutGatewayError,
    PayoutInstruction,
    PayoutReceipt,
    PayoutStatusReport,
)

_REWARD_TYPES: Dict[PayoutMethod, str] = {
    PayoutMethod.UPI: "UPI Payout",
    PayoutMethod.WALLET: "Amazon Pay Balance",
}


def _parse_json(response: httpx.Response) -> Mapping[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, Mapping) else None


class RazorpayPayoutGateway:
    """Submit and poll payouts through Razorpay X.

    Every submit carries a fresh ``X-Payout-Idempotency`` token and the
    redemption's deterministic ``reference_id``. HTTP failures are folded into
    ``PayoutGatewayError`` kinds: a response carrying a Razorpay error body is
    ``rejected``; transport errors, timeouts and 5xx responses without such a
    body are ``unreachable``.
    """

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        account_number: str,
        api_url: str = "https://api.razorpay.com/v1",
        timeout_seconds: float = 15.0,
        narration: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._key_id = key_id
        self._key_secret = key_secret
        self._account_number = account_number
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        self._narration = narration
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "RazorpayPayoutGateway":
        resolved = settings or get_settings()
        return cls(
            key_id=resolved.razorpay_key_id,
            key_secret=resolved.razorpay_key_secret,
            account_number=resolved.razorpay_account_number,
            api_url=resolved.razorpay_api_url,
            timeout_seconds=resolved.payout_gateway_timeout_seconds,
            narration=resolved.payout_narration,
            http_client=http_client,
        )

    async def submit(self, instruction: PayoutInstruction) -> PayoutReceipt:
        self._ensure_credentials()
        payload = self.build_payload(instruction)
        idempotency_key = str(uuid4())

        logger.info(
            "Submitting Razorpay payout",
            redemption_id=str(instruction.redemption_id),
            reference_id=instruction.reference_id,
            method=instruction.method.value,
            amount_paise=instruction.amount_paise,
            destination=instruction.destination,
        )
        body = await self._request(
            "POST",
            "/payouts",
            json=payload,
            headers={"X-Payout-Idempotency": idempotency_key},
        )

        payout_id = body.get("id")
        status = body.get("status")
        if not payout_id or not status:
            # Accepted response without an identifier cannot be tracked locally.
            raise PayoutGatewayError(
                "Payment gateway returned a payout without id or status",
                kind=GatewayErrorKind.UNREACHABLE,
                code="invalid_response",
                payload=body,
            )
        if str(status) in FAILED_STATUSES:
            report = PayoutStatusReport(external_payout_id=str(payout_id), external_status=str(status), raw=body)
            logger.warning(
                "Razorpay declined payout on submit",
                reference_id=instruction.reference_id,
                external_payout_id=str(payout_id),
                external_status=str(status),
            )
            raise PayoutGatewayError(
                report.failure_reason,
                kind=GatewayErrorKind.REJECTED,
                code=f"payout_{status}",
                payload=body,
            )

        return PayoutReceipt(
            external_payout_id=str(payout_id),
            external_status=str(status),
            idempotency_key=idempotency_key,
            raw=body,
        )

    async def check_status(self, external_payout_id: str) -> PayoutStatusReport:
        self._ensure_credentials()
        body = await self._request("GET", f"/payouts/{external_payout_id}")
        status = body.get("status")
        if not status:
            raise PayoutGatewayError(
                "Payment gateway returned a payout without status",
                kind=GatewayErrorKind.UNREACHABLE,
                code="invalid_response",
                payload=body,
            )
        return PayoutStatusReport(
            external_payout_id=str(body.get("id") or external_payout_id),
            external_status=str(status),
            raw=body,
        )

    async def verify_credentials(self) -> bool:
        """Probe ``GET /balance``; ``True`` when Razorpay accepts the key pair."""

        try:
            self._ensure_credentials()
            await self._request("GET", "/balance")
        except PayoutGatewayError as exc:
            logger.warning("Razorpay credential probe failed", error=str(exc), kind=exc.kind.value)
            return False
        logger.info("Razorpay credential probe succeeded")
        return True

    def build_payload(self, instruction: PayoutInstruction) -> Dict[str, Any]:
        """Render the composite payout body for ``instruction``."""

        if instruction.amount_paise <= 0:
            raise PayoutGatewayError(
                "Payout amount must be positive",
                kind=GatewayErrorKind.MALFORMED,
                code="invalid_amount",
            )
        if not instruction.destination:
            raise PayoutGatewayError(
                "Payout destination is missing",
                kind=GatewayErrorKind.MALFORMED,
                code="invalid_destination",
            )

        contact: Dict[str, Any] = {
            "name": instruction.earner_name,
            "type": "customer",
            "reference_id": f"earner_{instruction.earner_id.hex}",
            "notes": {"earner_id": str(instruction.earner_id)},
        }
        if instruction.method is PayoutMethod.UPI:
            contact["email"] = instruction.earner_email or ""
            contact["contact"] = instruction.earner_phone or ""
            mode = "UPI"
            fund_account: Dict[str, Any] = {
                "account_type": "vpa",
                "vpa": {"address": instruction.destination},
                "contact": contact,
            }
        elif instruction.method is PayoutMethod.WALLET:
            contact["contact"] = instruction.destination
            mode = "amazonpay"
            fund_account = {
                "account_type": "wallet",
                "wallet": {
                    "provider": "amazonpay",
                    "phone": instruction.destination,
                    "name": instruction.earner_name,
                },
                "contact": contact,
            }
        else:  # pragma: no cover - closed enum
            raise PayoutGatewayError(
                f"Unsupported payout method {instruction.method}",
                kind=GatewayErrorKind.MALFORMED,
                code="invalid_method",
            )

        return {
            "account_number": self._account_number,
            "amount": instruction.amount_paise,
            "currency": instruction.currency,
            "mode": mode,
            "purpose": "payout",
            "fund_account": fund_account,
            "queue_if_low_balance": True,
            "reference_id": instruction.reference_id,
            "narration": instruction.narration or self._narration or "Rewards Payout",
            "notes": {
                "redemption_id": str(instruction.redemption_id),
                "points_redeemed": str(instruction.points),
                "reward_type": _REWARD_TYPES[instruction.method],
            },
        }

    def _ensure_credentials(self) -> None:
        if not (self._key_id and self._key_secret and self._account_number):
            raise PayoutGatewayError(
                "Razorpay credentials are not configured",
                kind=GatewayErrorKind.MALFORMED,
                code="missing_credentials",
            )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Mapping[str, Any]:
        url = f"{self._api_url}{path}"
        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None

        try:
            response = await client.request(
                method,
                url,
                json=json,
                headers=dict(headers or {}),
                auth=(self._key_id, self._key_secret),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise PayoutGatewayError(
                "Payment gateway timed out",
                kind=GatewayErrorKind.UNREACHABLE,
                code="timeout",
            ) from exc
        except httpx.HTTPError as exc:
            raise PayoutGatewayError(
                "Unable to connect to payment gateway",
                kind=GatewayErrorKind.UNREACHABLE,
                code="connection_error",
            ) from exc
        finally:
            if owns_client:
                await client.aclose()

        body = _parse_json(response)
        if response.is_success:
            if body is None:
                raise PayoutGatewayError(
                    "Payment gateway returned an unreadable response",
                    kind=GatewayErrorKind.UNREACHABLE,
                    code="invalid_response",
                    status_code=response.status_code,
                )
            return body

        error = body.get("error") if body else None
        if isinstance(error, Mapping) and (error.get("description") or error.get("code")):
            logger.warning(
                "Razorpay rejected request",
                path=path,
                status_code=response.status_code,
                code=error.get("code"),
            )
            raise PayoutGatewayError(
                str(error.get("description") or "Payment gateway error"),
                kind=GatewayErrorKind.REJECTED,
                code=str(error.get("code") or "gateway_error"),
                status_code=response.status_code,
                payload=body,
            )

        if response.status_code >= 500:
            raise PayoutGatewayError(
                f"Payment gateway unavailable (HTTP {response.status_code})",
                kind=GatewayErrorKind.UNREACHABLE,
                code="gateway_unavailable",
                status_code=response.status_code,
            )
        raise PayoutGatewayError(
            "Payment gateway error",
            kind=GatewayErrorKind.REJECTED,
            code="gateway_error",
            status_code=response.status_code,
            payload=body,
        )


__all__ = ["RazorpayPayoutGateway"]
