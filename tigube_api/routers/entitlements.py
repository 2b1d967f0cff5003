"""Entitlement read endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tigube_api.dependencies import get_current_user_with_db
from tigube_api.models.user import User
from tigube_api.services.feature_access import FeatureAccess

router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


class EntitlementsResponse(BaseModel):
    """Feature flags and limits the current user has. -1 means unlimited."""

    plan_tier: str
    synced: bool
    features: Dict[str, bool]
    limits: Dict[str, int]


@router.get("/me", response_model=EntitlementsResponse)
async def get_my_entitlements(
    user: User = Depends(get_current_user_with_db),
) -> Dict[str, Any]:
    """
    Get the current user's entitlements.

    A profile whose entitlements were never synced gets the basic
    tier's values.
    """
    access = FeatureAccess.for_user(user)
    snapshot = access.snapshot()
    return {
        "plan_tier": user.plan_tier if snapshot["synced"] else "basic",
        "synced": snapshot["synced"],
        "features": snapshot["features"],
        "limits": snapshot["limits"],
    }
