"""SQLAlchemy models package."""

from .earner import Earner  # noqa: F401
from .redemption import (  # noqa: F401
    PayoutMethod,
    RedemptionFailureKind,
    RedemptionRequest,
    RedemptionStatus,
    SettlementRun,
)

__all__ = [
    "Earner",
    "PayoutMethod",
    "RedemptionFailureKind",
    "RedemptionRequest",
    "RedemptionStatus",
    "SettlementRun",
]
