"""In-memory payout gateway for local development and tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List
from uuid import uuid4

from loguru import logger

from rewards_api.services.payouts.gateway import (
    GatewayErrorKind,
    PayoutGatewayError,
    PayoutInstruction,
    PayoutReceipt,
    PayoutStatusReport,
)


@dataclass
class StaticPayoutGateway:
    """Accept every payout unless an outcome is scripted for its reference.

    ``failures`` maps a ``reference_id`` to the error kind raised on submit;
    ``statuses`` maps an external payout id to the status reported on poll.
    Accepted payouts report ``submit_status`` until overridden.
    """

    submit_status: str = "processing"
    failures: Dict[str, GatewayErrorKind] = field(default_factory=dict)
    statuses: Dict[str, str] = field(default_factory=dict)
    unreachable_polls: bool = False
    submitted: List[PayoutInstruction] = field(default_factory=list)

    async def submit(self, instruction: PayoutInstruction) -> PayoutReceipt:
        self.submitted.append(instruction)
        kind = self.failures.get(instruction.reference_id)
        if kind is not None:
            raise PayoutGatewayError(
                f"Sandbox payout {kind.value}",
                kind=kind,
                code=f"sandbox_{kind.value}",
            )

        payout_id = f"pout_{uuid4().hex[:14]}"
        self.statuses.setdefault(payout_id, self.submit_status)
        logger.debug("Sandbox payout accepted", payout_id=payout_id, reference_id=instruction.reference_id)
        return PayoutReceipt(
            external_payout_id=payout_id,
            external_status=self.submit_status,
            idempotency_key=str(uuid4()),
            raw={"id": payout_id, "status": self.submit_status, "reference_id": instruction.reference_id},
        )

    async def check_status(self, external_payout_id: str) -> PayoutStatusReport:
        if self.unreachable_polls:
            raise PayoutGatewayError(
                "Sandbox gateway unreachable",
                kind=GatewayErrorKind.UNREACHABLE,
                code="sandbox_unreachable",
            )
        status = self.statuses.get(external_payout_id)
        if status is None:
            raise PayoutGatewayError(
                f"Unknown payout {external_payout_id}",
                kind=GatewayErrorKind.REJECTED,
                code="not_found",
            )
        return PayoutStatusReport(
            external_payout_id=external_payout_id,
            external_status=status,
            raw={"id": external_payout_id, "status": status},
        )

    def settle(self, external_payout_id: str, status: str = "processed") -> None:
        self.statuses[external_payout_id] = status


__all__ = ["StaticPayoutGateway"]
