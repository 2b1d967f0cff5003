"""Authentication endpoints."""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tigube_api.dependencies import get_current_user_with_db
from tigube_api.models.user import User

router = APIRouter(prefix="/auth", tags=["Auth"])


class UserResponse(BaseModel):
    """Response model for /auth/me endpoint."""

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: str
    role: str
    plan_tier: Optional[str] = None
    premium_badge: bool
    created_at: datetime


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(
    user: User = Depends(get_current_user_with_db),
) -> Dict[str, Any]:
    """
    Get current user information.

    Returns the authenticated user's profile and cached plan tier.

    Requires authentication.
    """
    return {
        "id": str(user.id),
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "user_type": user.user_type,
        "role": user.role,
        "plan_tier": user.plan_tier,
        "premium_badge": user.premium_badge,
        "created_at": user.created_at,
    }
