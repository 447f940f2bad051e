"""Redemption lifecycle, reconciliation and facade exports."""

from .lifecycle import RedemptionLifecycle  # noqa: F401
from .reconciler import RedemptionStatusReconciler  # noqa: F401
from .service import PointsSummary, RedemptionService, public_status  # noqa: F401
