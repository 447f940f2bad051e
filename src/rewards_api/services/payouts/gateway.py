"""Payout gateway contract shared by every provider adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol
from uuid import UUID

from rewards_api.models.earner import Earner
from rewards_api.models.redemption import PayoutMethod, RedemptionRequest

# Gateway payout statuses (Razorpay vocabulary) grouped by what they mean locally.
SETTLED_STATUSES = frozenset({"processed"})
FAILED_STATUSES = frozenset({"reversed", "rejected", "failed", "cancelled"})


class GatewayErrorKind(str, Enum):
    """Error taxonomy for payout gateway calls."""

    REJECTED = "rejected"
    UNREACHABLE = "unreachable"
    MALFORMED = "malformed"


class PayoutGatewayError(RuntimeError):
    """Raised by gateway adapters; ``kind`` tells callers how final it is."""

    def __init__(
        self,
        message: str,
        *,
        kind: GatewayErrorKind,
        code: str | None = None,
        status_code: int | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.status_code = status_code
        self.payload = dict(payload or {})

    @property
    def is_ambiguous(self) -> bool:
        """True when the gateway may have accepted the request regardless."""

        return self.kind is GatewayErrorKind.UNREACHABLE


def reference_id_for(redemption_id: UUID) -> str:
    """Deterministic gateway reference for a redemption (max 40 chars)."""

    return f"rdm_{redemption_id.hex}"


@dataclass(slots=True)
class PayoutInstruction:
    """Method-agnostic description of a payout to submit."""

    redemption_id: UUID
    earner_id: UUID
    points: int
    amount_paise: int
    currency: str
    method: PayoutMethod
    destination: str
    reference_id: str
    earner_name: str
    earner_email: str | None = None
    earner_phone: str | None = None
    narration: str | None = None

    @classmethod
    def from_redemption(
        cls,
        redemption: RedemptionRequest,
        earner: Earner,
        *,
        paise_per_point: int,
        currency: str,
        narration: str | None = None,
    ) -> "PayoutInstruction":
        return cls(
            redemption_id=redemption.id,
            earner_id=earner.id,
            points=int(redemption.points),
            amount_paise=int(redemption.points) * int(paise_per_point),
            currency=currency,
            method=PayoutMethod(redemption.method),
            destination=redemption.destination_details,
            reference_id=redemption.reference_id or reference_id_for(redemption.id),
            earner_name=earner.display_name,
            earner_email=earner.email,
            earner_phone=earner.phone,
            narration=narration,
        )


@dataclass(slots=True)
class PayoutReceipt:
    """Gateway acknowledgement of an accepted payout."""

    external_payout_id: str
    external_status: str
    idempotency_key: str
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PayoutStatusReport:
    """Result of polling a payout's status."""

    external_payout_id: str
    external_status: str
    raw: Mapping[str, Any] = field(default_factory=dict)

    @property
    def settled(self) -> bool:
        return self.external_status in SETTLED_STATUSES

    @property
    def failed(self) -> bool:
        return self.external_status in FAILED_STATUSES

    @property
    def failure_reason(self) -> str:
        details = self.raw.get("status_details") if isinstance(self.raw, Mapping) else None
        if isinstance(details, Mapping) and details.get("description"):
            return str(details["description"])
        failure = self.raw.get("failure_reason") if isinstance(self.raw, Mapping) else None
        if failure:
            return str(failure)
        return f"Payout {self.external_status} by gateway"


class PayoutGateway(Protocol):
    """Uniform payout interface regardless of payout method."""

    async def submit(self, instruction: PayoutInstruction) -> PayoutReceipt:
        """Submit a payout; raise ``PayoutGatewayError`` on any failure."""

    async def check_status(self, external_payout_id: str) -> PayoutStatusReport:
        """Read-only status poll for a previously accepted payout."""


__all__ = [
    "FAILED_STATUSES",
    "GatewayErrorKind",
    "PayoutGateway",
    "PayoutGatewayError",
    "PayoutInstruction",
    "PayoutReceipt",
    "PayoutStatusReport",
    "SETTLED_STATUSES",
    "reference_id_for",
]
