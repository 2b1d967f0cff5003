"""
Admin endpoints for entitlement sync and drift repair.

All endpoints require an admin profile.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from tigube_api.dependencies import get_store, get_sync_engine, require_admin
from tigube_api.models.user import User
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.errors import StoreError
from tigube_api.services.sync_engine import BulkSyncResult, DriftEntry, SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


class AdminSyncResponse(BaseModel):
    user_id: str
    success: bool
    message: str
    plan_tier: Optional[str] = None


class SubscriptionStatsResponse(BaseModel):
    total_users: int
    premium_badge_users: int
    active_subscriptions: int
    drift_count: int
    drift: List[DriftEntry]


@router.post("/users/{user_id}/sync", response_model=AdminSyncResponse)
async def sync_user(
    user_id: str,
    admin: User = Depends(require_admin),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """
    Re-derive one user's entitlements.

    Raises:
        HTTPException(404): If the user does not exist.
        HTTPException(503): If the store failed; safe to retry.
    """
    logger.info(f"Admin {admin.email} syncing user {user_id}")
    result = await engine.sync_user(user_id)
    if not result.success:
        if result.error_code == "profile_not_found":
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="User not found",
            )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Sync failed: {result.error}",
        )
    return {
        "user_id": user_id,
        "success": True,
        "message": f"User synced to {result.plan_tier}",
        "plan_tier": result.plan_tier,
    }


@router.post("/sync-all", response_model=BulkSyncResult)
async def sync_all_users(
    admin: User = Depends(require_admin),
    engine: SyncEngine = Depends(get_sync_engine),
) -> BulkSyncResult:
    """Re-derive entitlements for every user and report failures per user."""
    logger.info(f"Admin {admin.email} started a bulk sync")
    try:
        return await engine.sync_all_users()
    except StoreError as e:
        logger.error(f"Bulk sync failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bulk sync failed. Please try again.",
        )


@router.get("/subscription-stats", response_model=SubscriptionStatsResponse)
async def subscription_stats(
    admin: User = Depends(require_admin),
    store: EntitlementStore = Depends(get_store),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """Counts plus the users whose cached entitlements have drifted."""
    try:
        drift = await engine.drift_report()
        return {
            "total_users": await store.count_users(),
            "premium_badge_users": await store.count_users(premium_badge=True),
            "active_subscriptions": await store.count_active_subscriptions(),
            "drift_count": len(drift),
            "drift": drift,
        }
    except StoreError as e:
        logger.error(f"Failed to compute subscription stats: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stats unavailable. Please try again.",
        )
