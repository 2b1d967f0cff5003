"""Billing and subscription endpoints."""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, NoReturn, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict

from tigube_api.dependencies import (
    get_current_user,
    get_current_user_with_db,
    get_profile_wait_policy,
    get_store,
    get_stripe_gateway,
    get_sync_engine,
)
from tigube_api.models.user import User
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.errors import EntitlementError, StoreError
from tigube_api.services.feature_matrix import BASIC, ROLE_PLANS, normalize_tier
from tigube_api.services.profile_wait import ProfileWaitPolicy, wait_for_profile
from tigube_api.services.stripe_gateway import StripeGateway
from tigube_api.services.sync_engine import SyncEngine, describe_failure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


class SubscriptionInfo(BaseModel):
    """One subscription row as shown to its owner."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    plan_type: str
    user_type: str
    status: str
    amount_paid_cents: int
    currency: str
    billing_interval: str
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    created_at: datetime


class SubscriptionResponse(BaseModel):
    """Response model for the current subscription."""

    plan_tier: str
    subscription: Optional[SubscriptionInfo] = None


class BillingHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: str
    payment_status: str
    amount_cents: int
    currency: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    created_at: datetime


class SyncResponse(BaseModel):
    """Response model for manual sync."""

    success: bool
    message: str
    plan_tier: Optional[str] = None


class CheckoutSyncRequest(BaseModel):
    checkout_session_id: str


class CheckoutSyncResponse(BaseModel):
    success: bool
    status: str
    message: str
    plan_tier: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    """Request model for creating a checkout session."""

    plan: Optional[str] = None  # defaults to the plan sold to the caller's role
    success_url: str
    cancel_url: str


class CheckoutSessionResponse(BaseModel):
    """Response model for checkout session."""

    checkout_url: str


class PortalSessionRequest(BaseModel):
    """Request model for creating a portal session."""

    return_url: str


class PortalSessionResponse(BaseModel):
    """Response model for portal session."""

    portal_url: str


def _raise_http(error: EntitlementError) -> NoReturn:
    raise HTTPException(
        status_code=error.status_code,
        detail=describe_failure(error),
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_user_subscription(
    user: User = Depends(get_current_user_with_db),
    store: EntitlementStore = Depends(get_store),
) -> Dict[str, Any]:
    """
    Get the current user's active subscription and effective plan tier.

    Requires authentication.
    """
    try:
        subscription = await store.get_active_subscription(user.id)
    except StoreError as e:
        logger.error(f"Failed to load subscription for {user.id}: {e.message}")
        _raise_http(e)

    return {
        "plan_tier": normalize_tier(subscription.plan_type if subscription else None),
        "subscription": subscription,
    }


@router.get("/subscriptions", response_model=List[SubscriptionInfo])
async def list_user_subscriptions(
    user: User = Depends(get_current_user_with_db),
    store: EntitlementStore = Depends(get_store),
):
    """Full subscription history of the current user, newest first."""
    try:
        return await store.get_all_subscriptions(user.id)
    except StoreError as e:
        logger.error(f"Failed to load subscriptions for {user.id}: {e.message}")
        _raise_http(e)


@router.get("/history", response_model=List[BillingHistoryItem])
async def get_billing_history(
    user: User = Depends(get_current_user_with_db),
    store: EntitlementStore = Depends(get_store),
):
    """Payments and billing events recorded for the current user."""
    try:
        return await store.get_billing_history(user.id)
    except StoreError as e:
        logger.error(f"Failed to load billing history for {user.id}: {e.message}")
        _raise_http(e)


@router.post("/sync", response_model=SyncResponse)
async def sync_my_subscription(
    user: User = Depends(get_current_user_with_db),
    engine: SyncEngine = Depends(get_sync_engine),
) -> Dict[str, Any]:
    """
    Re-derive the current user's entitlements from their subscriptions.

    Requires authentication.

    Raises:
        HTTPException(503): If the sync failed; safe to retry.
    """
    result = await engine.sync_user(user.id)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="We could not sync your subscription. Please try again.",
        )
    return {
        "success": True,
        "message": f"Your subscription is up to date ({result.plan_tier}).",
        "plan_tier": result.plan_tier,
    }


@router.post("/sync-checkout-session", response_model=CheckoutSyncResponse)
async def sync_checkout_session(
    request: CheckoutSyncRequest,
    user_info: Dict[str, str] = Depends(get_current_user),
    store: EntitlementStore = Depends(get_store),
    engine: SyncEngine = Depends(get_sync_engine),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    policy: ProfileWaitPolicy = Depends(get_profile_wait_policy),
) -> Dict[str, Any]:
    """
    Confirm a checkout session right after the Stripe redirect.

    Runs the same idempotent creation as the webhook, so whichever
    arrives first records the subscription. Polling again re-syncs and
    reports the effective plan tier.

    Raises:
        HTTPException(402): If the session is not paid yet.
        HTTPException(403): If the session belongs to another user.
        HTTPException(502): If Stripe could not be reached.
    """
    user_id = user_info["sub"]

    try:
        session = await gateway.retrieve_checkout_session(request.checkout_session_id)
    except stripe.StripeError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable. Please try again.",
        )

    if session.user_reference != user_id:
        logger.warning(f"User {user_id} tried to sync checkout session {session.id} of another user")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Checkout session does not belong to the current user",
        )

    try:
        await wait_for_profile(store, user_id, policy)
        result = await engine.create_or_recognize_subscription(session.id, session)
    except EntitlementError as e:
        logger.error(f"Checkout sync failed for session {session.id}, user {user_id}: {e.code}: {e.message}")
        _raise_http(e)

    sync = result.sync or await engine.sync_user(result.user_id)
    if not sync.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Your payment was recorded but we could not update your plan. Please try again.",
        )

    if sync.plan_tier == BASIC:
        message = "This subscription is no longer active."
    else:
        message = "Your subscription is active."
    return {
        "success": True,
        "status": result.status,
        "message": message,
        "plan_tier": sync.plan_tier,
    }


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    user: User = Depends(get_current_user_with_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict[str, str]:
    """
    Create a Stripe checkout session for the plan sold to the user's role.

    Owners buy premium, caretakers buy professional.

    Raises:
        HTTPException(400): If the plan does not match the user's role.
    """
    plan = ROLE_PLANS.get(user.user_type)
    if plan is None or (request.plan and request.plan != plan):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid plan for a {user.user_type} account.",
        )

    try:
        checkout_url = await gateway.create_checkout_session(
            user=user,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
        )
    except stripe.StripeError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable. Please try again.",
        )

    return {"checkout_url": checkout_url}


@router.post("/create-portal-session", response_model=PortalSessionResponse)
async def create_portal_session(
    request: PortalSessionRequest,
    user: User = Depends(get_current_user_with_db),
    store: EntitlementStore = Depends(get_store),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict[str, str]:
    """
    Create a Stripe customer portal session.

    Allows the user to manage their subscription,
    update payment methods, and view invoices.

    Raises:
        HTTPException(400): If user has no Stripe customer ID.
    """
    try:
        subscriptions = await store.get_all_subscriptions(user.id)
    except StoreError as e:
        _raise_http(e)

    customer_id = next((s.stripe_customer_id for s in subscriptions if s.stripe_customer_id), None)
    if not customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Stripe customer found. Please subscribe first.",
        )

    try:
        portal_url = await gateway.create_portal_session(
            customer_id=customer_id,
            return_url=request.return_url,
        )
    except stripe.StripeError:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable. Please try again.",
        )

    return {"portal_url": portal_url}
