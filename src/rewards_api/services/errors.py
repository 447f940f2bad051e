"""Exception hierarchy shared by the ledger, lifecycle and reconciler."""

from __future__ import annotations

from uuid import UUID


class RedemptionError(RuntimeError):
    """Base exception for redemption and points ledger failures."""


class EarnerNotFoundError(RedemptionError):
    """Raised when an operation targets an unknown earner."""

    def __init__(self, earner_id: UUID) -> None:
        super().__init__(f"Earner {earner_id} not found")
        self.earner_id = earner_id


class InsufficientPointsError(RedemptionError):
    """Raised when a debit exceeds the earner's available points."""

    def __init__(self, earner_id: UUID, *, requested: int, available: int) -> None:
        super().__init__(f"Insufficient points: requested {requested}, available {available}")
        self.earner_id = earner_id
        self.requested = requested
        self.available = available


class RedemptionBelowMinimumError(RedemptionError):
    """Raised when a redemption asks for fewer points than the policy minimum."""

    def __init__(self, requested: int, minimum: int) -> None:
        super().__init__(f"Minimum redemption is {minimum} points, requested {requested}")
        self.requested = requested
        self.minimum = minimum


class InvalidMethodForDestinationError(RedemptionError):
    """Raised when destination details cannot address the chosen payout method."""

    def __init__(self, method: str | None, message: str) -> None:
        super().__init__(message)
        self.method = method


class RedemptionNotFoundError(RedemptionError):
    """Raised when a redemption request does not exist."""

    def __init__(self, request_id: UUID) -> None:
        super().__init__(f"Redemption {request_id} not found")
        self.request_id = request_id


class InvalidRedemptionTransitionError(RedemptionError):
    """Raised when a transition violates the redemption state machine."""

    def __init__(self, current_status: str, requested_status: str) -> None:
        super().__init__(f"Cannot transition redemption from {current_status} to {requested_status}")
        self.current_status = current_status
        self.requested_status = requested_status


class ReconciliationUnavailableError(RedemptionError):
    """Raised when the gateway cannot be polled; the caller may retry later."""


class LedgerInvariantViolation(RedemptionError):
    """A credit would have pushed redeemed points below zero."""


__all__ = [
    "EarnerNotFoundError",
    "InsufficientPointsError",
    "InvalidMethodForDestinationError",
    "InvalidRedemptionTransitionError",
    "LedgerInvariantViolation",
    "ReconciliationUnavailableError",
    "RedemptionBelowMinimumError",
    "RedemptionError",
    "RedemptionNotFoundError",
]
