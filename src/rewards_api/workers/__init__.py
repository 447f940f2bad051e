"""Background workers supporting settlement."""

from .redemption_settlement import RedemptionSettlementWorker

__all__ = ["RedemptionSettlementWorker"]
