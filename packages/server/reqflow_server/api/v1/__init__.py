"""
API v1 Router

Every endpoint is scoped to the organization named by the caller's
credential; no route takes an organization from the path or a header.
"""

from fastapi import APIRouter

from . import authorize, budgets, notifications, requisitions

router = APIRouter()

router.include_router(authorize.router, tags=["Authorization"])
router.include_router(requisitions.router, prefix="/requisitions", tags=["Requisitions"])
router.include_router(budgets.router, tags=["Budgets"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/authorize",
            "/requisitions",
            "/budget-accounts/{id}",
            "/reservations/{token}",
            "/notifications/pending",
        ],
    }
