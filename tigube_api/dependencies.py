"""
FastAPI dependencies for authentication, authorization and services.
"""

import logging
from functools import lru_cache
from typing import Dict

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tigube_api.config import get_settings
from tigube_api.db.database import get_db
from tigube_api.models.user import User
from tigube_api.services.auth import AuthService
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.errors import AuthenticationFailure, StoreError
from tigube_api.services.feature_access import FeatureAccess
from tigube_api.services.feature_matrix import FLAG_FIELDS
from tigube_api.services.profile_wait import ProfileWaitPolicy
from tigube_api.services.stripe_gateway import StripeGateway
from tigube_api.services.sync_engine import SyncEngine
from tigube_api.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)


@lru_cache()
def get_auth_service() -> AuthService:
    return AuthService(get_settings())


@lru_cache()
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(get_settings())


def get_profile_wait_policy() -> ProfileWaitPolicy:
    return ProfileWaitPolicy.from_settings(get_settings())


def get_store(db: AsyncSession = Depends(get_db)) -> EntitlementStore:
    return EntitlementStore(db)


def get_sync_engine(store: EntitlementStore = Depends(get_store)) -> SyncEngine:
    return SyncEngine(store)


def get_webhook_processor(
    store: EntitlementStore = Depends(get_store),
    engine: SyncEngine = Depends(get_sync_engine),
) -> WebhookProcessor:
    return WebhookProcessor(engine, store)


async def get_current_user(
    authorization: str = Header(..., description="Bearer token"),
    auth_service: AuthService = Depends(get_auth_service),
) -> Dict[str, str]:
    """
    Validate JWT token and return user info.

    Extracts the Bearer token from the Authorization header,
    validates it with Supabase auth, and returns user claims.

    Args:
        authorization: Authorization header value (Bearer <token>).

    Returns:
        Dict with 'sub' (user ID) and 'email' keys.

    Raises:
        HTTPException(401): If token is missing, invalid, or expired.
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization[7:]  # Remove "Bearer " prefix

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await auth_service.get_user_info(token)
    except AuthenticationFailure as e:
        logger.warning(f"Token validation failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user_with_db(
    user_info: Dict[str, str] = Depends(get_current_user),
    store: EntitlementStore = Depends(get_store),
) -> User:
    """
    Get the current authenticated user's profile.

    Profiles are created by the sign-up flow, never here.

    Raises:
        HTTPException(404): If the profile does not exist (yet).
        HTTPException(503): If the store is unavailable.
    """
    try:
        user = await store.get_user(user_info["sub"])
    except StoreError as e:
        logger.error(f"Failed to load profile {user_info['sub']}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Profile temporarily unavailable",
        )

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found",
        )
    return user


async def require_admin(
    user: User = Depends(get_current_user_with_db),
) -> User:
    """Require the current user to be an admin."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def require_feature(name: str):
    """
    Dependency factory that requires an entitlement flag.

    Args:
        name: Feature flag name, e.g. "advanced_filters".

    Returns:
        Dependency function answering 402 when the feature is not granted.
    """
    if name not in FLAG_FIELDS:
        raise ValueError(f"Unknown feature: {name}")

    async def check_feature(
        user: User = Depends(get_current_user_with_db),
    ) -> FeatureAccess:
        access = FeatureAccess.for_user(user)
        if not access.check_feature(name):
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=f"This feature requires a paid plan: {name}",
            )
        return access

    return check_feature
