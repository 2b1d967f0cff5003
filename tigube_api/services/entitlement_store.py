"""
Entitlement store: subscriptions, the user entitlement cache and
billing history.

The store never commits. The sync engine owns transaction boundaries
and calls ``commit``/``rollback`` once a convergence step is complete.
Every SQLAlchemy failure leaves this module as ``StoreError``.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tigube_api.models.billing_history import BillingHistory
from tigube_api.models.subscription import SUBSCRIPTION_STATUSES, Subscription
from tigube_api.models.user import User
from tigube_api.services.errors import ProfileNotFound, StoreError
from tigube_api.services.feature_matrix import features_for, normalize_tier

logger = logging.getLogger(__name__)

UserId = Union[str, uuid.UUID]


class NewSubscription(BaseModel):
    """Data for a subscription created from a paid checkout session."""

    user_id: uuid.UUID
    user_type: str
    plan_type: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    amount_paid_cents: int
    currency: str
    billing_interval: str = "month"
    started_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CreateResult(BaseModel):
    """Outcome of ``create_subscription_if_absent``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    created: bool
    subscription: Subscription


def as_user_id(user_id: UserId) -> uuid.UUID:
    """Coerce a user id to UUID; malformed ids cannot name a profile."""
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise ProfileNotFound(f"User {user_id} not found", details={"user_id": str(user_id)})


class EntitlementStore:
    """
    Persistence for subscriptions and the entitlement cache.

    Constructed per request with the request's database session.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Commit failed: {e}") from e

    async def rollback(self) -> None:
        await self.db.rollback()

    # Users

    async def get_user(self, user_id: UserId) -> Optional[User]:
        """Return the user row or None."""
        try:
            return await self.db.get(User, as_user_id(user_id))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load user {user_id}: {e}") from e

    async def list_user_ids(self) -> List[uuid.UUID]:
        """All user ids, oldest first."""
        try:
            result = await self.db.execute(select(User.id).order_by(User.created_at))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list users: {e}") from e

    async def list_users_with_active_plan(self) -> List[Tuple[User, Optional[str]]]:
        """Every user paired with the plan of their active subscription, if any."""
        try:
            result = await self.db.execute(
                select(User, Subscription.plan_type)
                .outerjoin(
                    Subscription,
                    and_(
                        Subscription.user_id == User.id,
                        Subscription.status == "active",
                    ),
                )
                .order_by(User.email)
            )
            return [(row[0], row[1]) for row in result.all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list users: {e}") from e

    async def upsert_entitlements(self, user_id: UserId, tier: Optional[str]) -> None:
        """
        Write the entitlement cache for ``tier`` onto the user row.

        All columns are written by one UPDATE statement, so a reader
        never sees a mix of old and new values.

        Raises:
            ProfileNotFound: If the user row does not exist.
            StoreError: On any database failure.
        """
        uid = as_user_id(user_id)
        entitlements = features_for(tier)
        now = datetime.now(timezone.utc)
        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == uid)
                .values(
                    plan_tier=normalize_tier(tier),
                    entitlements_synced_at=now,
                    updated_at=now,
                    **entitlements.model_dump(),
                )
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write entitlements for user {uid}: {e}") from e
        if result.rowcount == 0:
            raise ProfileNotFound(f"User {uid} not found", details={"user_id": str(uid)})

    # Subscriptions

    async def get_active_subscription(self, user_id: UserId) -> Optional[Subscription]:
        """Return the user's active subscription or None."""
        uid = as_user_id(user_id)
        try:
            result = await self.db.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == uid,
                    Subscription.status == "active",
                )
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load active subscription for {uid}: {e}") from e

    async def get_all_subscriptions(self, user_id: UserId) -> List[Subscription]:
        """Full subscription history for the user, newest first."""
        uid = as_user_id(user_id)
        try:
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.user_id == uid)
                .order_by(Subscription.created_at.desc(), Subscription.id)
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load subscriptions for {uid}: {e}") from e

    async def get_subscription(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        try:
            return await self.db.get(Subscription, subscription_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load subscription {subscription_id}: {e}") from e

    async def get_subscription_by_checkout_session(self, checkout_session_ref: str) -> Optional[Subscription]:
        try:
            # populate_existing: a rolled back savepoint may have left stale attributes
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.stripe_checkout_session_id == checkout_session_ref)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load subscription for session {checkout_session_ref}: {e}") from e

    async def find_subscription_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        """Newest local row created for a Stripe subscription."""
        try:
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.stripe_subscription_id == stripe_subscription_id)
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to look up Stripe subscription {stripe_subscription_id}: {e}") from e

    async def find_subscription_by_customer(self, stripe_customer_id: str) -> Optional[Subscription]:
        """Newest local row for a Stripe customer."""
        try:
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.stripe_customer_id == stripe_customer_id)
                .order_by(Subscription.created_at.desc())
                .limit(1)
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to look up Stripe customer {stripe_customer_id}: {e}") from e

    async def transition_subscription(
        self,
        subscription_id: uuid.UUID,
        new_status: str,
    ) -> Optional[Subscription]:
        """
        Change only the status of a subscription.

        ``cancelled`` is terminal: a cancelled row keeps its status no
        matter which status a late event asks for.

        Returns:
            The subscription, or None if no such row exists.
        """
        if new_status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {new_status}")

        subscription = await self.get_subscription(subscription_id)
        if subscription is None:
            logger.warning(f"Cannot transition missing subscription {subscription_id}")
            return None
        if subscription.status == new_status:
            return subscription
        if subscription.status == "cancelled":
            logger.info(
                f"Ignoring transition of cancelled subscription {subscription_id} to {new_status}"
            )
            return subscription

        try:
            # updated_at is set by the column's server-side onupdate
            subscription.status = new_status
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to transition subscription {subscription_id}: {e}") from e
        logger.info(f"Subscription {subscription_id} is now {new_status}")
        return subscription

    async def update_billing_period(
        self,
        subscription: Subscription,
        ends_at: Optional[datetime],
        stripe_subscription_id: Optional[str] = None,
    ) -> None:
        try:
            if ends_at is not None:
                subscription.ends_at = ends_at
            if stripe_subscription_id and not subscription.stripe_subscription_id:
                subscription.stripe_subscription_id = stripe_subscription_id
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update billing period of {subscription.id}: {e}") from e

    async def create_subscription_if_absent(
        self,
        checkout_session_ref: str,
        data: NewSubscription,
    ) -> CreateResult:
        """
        Insert a subscription unless one exists for the checkout session.

        The unique checkout-session column is the serialization point:
        when a concurrent delivery wins the insert, this call rolls back
        its savepoint and returns the winner's row with ``created=False``.
        An older active row of the same user is cancelled in the same
        savepoint so the one-active-per-user index holds.
        """
        existing = await self.get_subscription_by_checkout_session(checkout_session_ref)
        if existing is not None:
            return CreateResult(created=False, subscription=existing)

        subscription = Subscription(
            user_id=data.user_id,
            user_type=data.user_type,
            plan_type=data.plan_type,
            status="active",
            stripe_customer_id=data.stripe_customer_id,
            stripe_subscription_id=data.stripe_subscription_id,
            stripe_checkout_session_id=checkout_session_ref,
            amount_paid_cents=data.amount_paid_cents,
            currency=data.currency.lower(),
            billing_interval=data.billing_interval,
            started_at=data.started_at or datetime.now(timezone.utc),
            ends_at=data.ends_at,
            extra_metadata=dict(data.metadata),
        )
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(Subscription)
                    .where(
                        Subscription.user_id == data.user_id,
                        Subscription.status == "active",
                    )
                    .values(status="cancelled", updated_at=datetime.now(timezone.utc))
                )
                self.db.add(subscription)
                await self.db.flush()
        except IntegrityError as e:
            winner = await self.get_subscription_by_checkout_session(checkout_session_ref)
            if winner is None:
                raise StoreError(
                    f"Conflicting active subscription for user {data.user_id}: {e}"
                ) from e
            logger.info(f"Checkout session {checkout_session_ref} was recorded concurrently")
            return CreateResult(created=False, subscription=winner)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create subscription for {checkout_session_ref}: {e}") from e

        logger.info(
            f"Created {data.plan_type} subscription {subscription.id} "
            f"for user {data.user_id} from session {checkout_session_ref}"
        )
        return CreateResult(created=True, subscription=subscription)

    # Billing history

    async def record_billing_event(
        self,
        *,
        event_type: str,
        payment_status: str,
        subscription: Optional[Subscription] = None,
        stripe_invoice_id: Optional[str] = None,
        amount_cents: int = 0,
        currency: Optional[str] = None,
        billing_period_start: Optional[datetime] = None,
        billing_period_end: Optional[datetime] = None,
    ) -> bool:
        """
        Record a billing side effect once per (invoice, payment status).

        Returns:
            True if a row was written, False if it was already recorded.
        """
        if stripe_invoice_id:
            try:
                result = await self.db.execute(
                    select(BillingHistory.id).where(
                        BillingHistory.stripe_invoice_id == stripe_invoice_id,
                        BillingHistory.payment_status == payment_status,
                    )
                )
            except SQLAlchemyError as e:
                raise StoreError(f"Failed to read billing history: {e}") from e
            if result.first() is not None:
                return False

        entry = BillingHistory(
            subscription_id=subscription.id if subscription else None,
            user_id=subscription.user_id if subscription else None,
            stripe_invoice_id=stripe_invoice_id,
            event_type=event_type,
            amount_cents=amount_cents,
            currency=currency.lower() if currency else None,
            billing_period_start=billing_period_start,
            billing_period_end=billing_period_end,
            payment_status=payment_status,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
                await self.db.flush()
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to record billing event {event_type}: {e}") from e
        return True

    async def get_billing_history(self, user_id: UserId) -> Sequence[BillingHistory]:
        uid = as_user_id(user_id)
        try:
            result = await self.db.execute(
                select(BillingHistory)
                .where(BillingHistory.user_id == uid)
                .order_by(BillingHistory.created_at.desc())
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load billing history for {uid}: {e}") from e

    # Admin counters

    async def count_users(self, *, premium_badge: Optional[bool] = None) -> int:
        query = select(func.count()).select_from(User)
        if premium_badge is not None:
            query = query.where(User.premium_badge.is_(premium_badge))
        try:
            return (await self.db.execute(query)).scalar_one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count users: {e}") from e

    async def count_active_subscriptions(self) -> int:
        try:
            result = await self.db.execute(
                select(func.count())
                .select_from(Subscription)
                .where(Subscription.status == "active")
            )
            return result.scalar_one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count subscriptions: {e}") from e
