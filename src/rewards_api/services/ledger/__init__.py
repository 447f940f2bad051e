"""Points ledger exports."""

from .points_ledger import (  # noqa: F401
    EarnerNotFoundError,
    InsufficientPointsError,
    LedgerInvariantViolation,
    PointsBalance,
    PointsLedger,
)
