"""API routes for CRM Alerts."""

from fastapi import APIRouter

from .alerts import router as alerts_router
from .escalation import router as escalation_router
from .goal_monitor import router as goal_monitor_router
from .webhooks import router as webhooks_router

# Mounted under settings.api_prefix (/functions/v1)
api_router = APIRouter()

api_router.include_router(goal_monitor_router)
api_router.include_router(alerts_router)
api_router.include_router(escalation_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
