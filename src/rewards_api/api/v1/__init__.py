from fastapi import APIRouter

from .endpoints import (
    health,
    observability,
    redemptions,
    settlement,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(redemptions.router)
router.include_router(settlement.router)
router.include_router(observability.router)
