"""Payout gateway provider adapters."""

from .razorpay import RazorpayPayoutGateway
from .sandbox import StaticPayoutGateway

__all__ = ["RazorpayPayoutGateway", "StaticPayoutGateway"]
