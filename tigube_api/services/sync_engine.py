"""
Synchronization engine.

Every path that can change what a user is entitled to (Stripe webhooks,
self-service and admin sync, the post-checkout confirmation) ends in
``SyncEngine.sync_user``, which recomputes the entitlement cache from the
user's current active subscription. It never applies deltas, so running
it any number of times converges to the same state.
"""

import logging
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tigube_api.models.subscription import Subscription
from tigube_api.services.entitlement_store import EntitlementStore, NewSubscription, UserId, as_user_id
from tigube_api.services.errors import (
    EntitlementError,
    PaymentNotCompleted,
    ProfileNotFound,
    StoreError,
)
from tigube_api.services.events import CheckoutSession
from tigube_api.services.feature_matrix import (
    BASIC,
    ENTITLEMENT_FIELDS,
    features_for,
    normalize_tier,
    plan_for_amount,
)

logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    """Outcome of one convergence step for one user."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    plan_tier: Optional[str] = None
    subscription: Optional[Subscription] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class SubscriptionResult(BaseModel):
    """Outcome of recording a paid checkout session."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: Literal["newly_synced", "already_synced"]
    user_id: uuid.UUID
    subscription: Subscription
    sync: Optional[SyncResult] = None

    @property
    def success(self) -> bool:
        return self.sync is None or self.sync.success


class UserSyncError(BaseModel):
    user_id: str
    error: str


class BulkSyncResult(BaseModel):
    total_users: int = 0
    synced_successfully: int = 0
    failed_syncs: int = 0
    errors: List[UserSyncError] = Field(default_factory=list)


class DriftEntry(BaseModel):
    """A user whose cached entitlements disagree with their effective tier."""

    user_id: str
    email: str
    cached_tier: Optional[str] = None
    effective_tier: str
    mismatched_fields: List[str]


class SyncEngine:
    """
    Converges the entitlement cache with the subscription table.

    The engine owns transaction boundaries: it commits after a complete
    convergence step and rolls back on failure, so a failed sync leaves
    no partial entitlement write behind.
    """

    def __init__(self, store: EntitlementStore):
        self.store = store

    async def sync_user(self, user_id: UserId) -> SyncResult:
        """
        Recompute the user's entitlements from their active subscription.

        Store failures and a missing profile are returned as a failed
        result rather than raised.
        """
        try:
            subscription = await self.store.get_active_subscription(user_id)
            tier = subscription.plan_type if subscription else BASIC
            await self.store.upsert_entitlements(user_id, tier)
            await self.store.commit()
        except (StoreError, ProfileNotFound) as e:
            await self.store.rollback()
            logger.error(f"Entitlement sync failed for user {user_id}: {e.code}: {e.message}")
            return SyncResult(success=False, error=e.message, error_code=e.code)

        plan_tier = normalize_tier(tier)
        logger.info(f"Synced user {user_id} to {plan_tier}")
        return SyncResult(success=True, plan_tier=plan_tier, subscription=subscription)

    async def create_or_recognize_subscription(
        self,
        checkout_session_ref: str,
        session: CheckoutSession,
    ) -> SubscriptionResult:
        """
        Record the subscription bought by a paid checkout session.

        Safe to call any number of times for the same session: only the
        first call creates a row and syncs entitlements, later calls
        report ``already_synced`` and leave syncing to the caller.

        Raises:
            PaymentNotCompleted: If the session is not paid yet.
            UnknownPlanAmount: If the amount is not a known plan price.
            ProfileNotFound: If the session names no existing user.
            StoreError: If the subscription row cannot be written.
        """
        if not session.is_paid:
            raise PaymentNotCompleted(
                f"Checkout session {checkout_session_ref} is not paid",
                details={
                    "status": session.status,
                    "payment_status": session.payment_status,
                },
            )

        plan_type, user_type = plan_for_amount(session.amount_total, session.currency)

        reference = session.user_reference
        if not reference:
            raise ProfileNotFound(
                f"Checkout session {checkout_session_ref} has no user reference",
                details={"checkout_session_id": checkout_session_ref},
            )
        user_id = as_user_id(reference)

        existing = await self.store.get_subscription_by_checkout_session(checkout_session_ref)
        if existing is not None:
            logger.info(f"Checkout session {checkout_session_ref} already recorded")
            return SubscriptionResult(status="already_synced", user_id=user_id, subscription=existing)

        if await self.store.get_user(user_id) is None:
            raise ProfileNotFound(f"User {user_id} not found", details={"user_id": str(user_id)})

        data = NewSubscription(
            user_id=user_id,
            user_type=user_type,
            plan_type=plan_type,
            stripe_customer_id=session.customer,
            stripe_subscription_id=session.subscription,
            amount_paid_cents=session.amount_total,
            currency=session.currency,
            metadata={**session.metadata, "customer_email": session.email},
        )
        try:
            created = await self.store.create_subscription_if_absent(checkout_session_ref, data)
            await self.store.commit()
        except StoreError:
            await self.store.rollback()
            raise

        if not created.created:
            return SubscriptionResult(status="already_synced", user_id=user_id, subscription=created.subscription)

        # A failed sync rolls back and expires the row, so read its id first
        subscription_id = created.subscription.id
        sync = await self.sync_user(user_id)
        if not sync.success:
            logger.warning(f"Subscription {subscription_id} recorded but sync failed for user {user_id}")
        return SubscriptionResult(
            status="newly_synced",
            user_id=user_id,
            subscription=created.subscription,
            sync=sync,
        )

    async def sync_all_users(self) -> BulkSyncResult:
        """Run ``sync_user`` for every user and aggregate the outcome."""
        result = BulkSyncResult()
        user_ids = await self.store.list_user_ids()
        result.total_users = len(user_ids)

        for user_id in user_ids:
            sync = await self.sync_user(user_id)
            if sync.success:
                result.synced_successfully += 1
            else:
                result.failed_syncs += 1
                result.errors.append(UserSyncError(user_id=str(user_id), error=sync.error or "unknown error"))

        logger.info(
            f"Bulk sync finished: {result.synced_successfully}/{result.total_users} synced, "
            f"{result.failed_syncs} failed"
        )
        return result

    async def drift_report(self) -> List[DriftEntry]:
        """List users whose cache differs from their effective tier's entitlements."""
        drift: List[DriftEntry] = []
        for user, active_plan in await self.store.list_users_with_active_plan():
            effective_tier = normalize_tier(active_plan)
            expected = features_for(effective_tier)
            mismatched = [
                name for name in ENTITLEMENT_FIELDS
                if getattr(user, name) != expected.value_of(name)
            ]
            if user.plan_tier != effective_tier:
                mismatched.insert(0, "plan_tier")
            if mismatched:
                drift.append(DriftEntry(
                    user_id=str(user.id),
                    email=user.email,
                    cached_tier=user.plan_tier,
                    effective_tier=effective_tier,
                    mismatched_fields=mismatched,
                ))
        return drift


def describe_failure(error: EntitlementError) -> str:
    """Short user-facing text for a failed operation."""
    if isinstance(error, PaymentNotCompleted):
        return "Your payment has not been completed yet."
    if isinstance(error, ProfileNotFound):
        return "We could not find your profile."
    return "We could not update your subscription. Please try again in a moment."

