"""
API Routes
"""
from fastapi import APIRouter

from opsboard.api.routes.alerts import router as alerts_router

router = APIRouter()

router.include_router(alerts_router, prefix="/alerts", tags=["Alerts"])
