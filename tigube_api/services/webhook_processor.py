"""
Stripe webhook dispatch.

Each handler converges stored state instead of applying the event's
payload as a delta, so redelivered and out-of-order events are safe.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel

from tigube_api.models.subscription import Subscription
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.errors import PaymentNotCompleted, StoreError
from tigube_api.services.events import (
    CheckoutSessionCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    StripeEvent,
    StripeInvoice,
    StripeSubscription,
    SubscriptionChanged,
    SubscriptionDeleted,
    from_timestamp,
)
from tigube_api.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

Outcome = Literal["processed", "already_processed", "ignored"]

# Stripe subscription status -> local status it forces. Other statuses,
# past_due included, leave the local row active.
TERMINAL_STATUSES = {
    "canceled": "cancelled",
    "unpaid": "unpaid",
    "incomplete_expired": "cancelled",
}


class WebhookResult(BaseModel):
    outcome: Outcome
    detail: Optional[str] = None


class WebhookProcessor:
    """Routes verified Stripe events to the sync engine."""

    def __init__(self, engine: SyncEngine, store: EntitlementStore):
        self.engine = engine
        self.store = store

    async def handle(self, event: StripeEvent) -> WebhookResult:
        """
        Process one parsed event.

        Raises:
            UnknownPlanAmount: If a checkout paid an unknown price.
            ProfileNotFound: If a checkout names no existing user.
            StoreError: If the store fails; Stripe should redeliver.
        """
        logger.info(f"Processing Stripe event {event.event_id} ({event.event_type})")

        if isinstance(event, CheckoutSessionCompleted):
            return await self._handle_checkout_completed(event)
        if isinstance(event, SubscriptionChanged):
            return await self._handle_subscription_changed(event.subscription)
        if isinstance(event, SubscriptionDeleted):
            return await self._handle_subscription_deleted(event.subscription)
        if isinstance(event, InvoicePaymentSucceeded):
            return await self._record_invoice(event.event_type, event.invoice, "paid")
        if isinstance(event, InvoicePaymentFailed):
            return await self._record_invoice(event.event_type, event.invoice, "failed")

        logger.info(f"Unhandled Stripe event type: {event.event_type}")
        return WebhookResult(outcome="ignored", detail="unhandled event type")

    async def _handle_checkout_completed(self, event: CheckoutSessionCompleted) -> WebhookResult:
        session = event.session
        try:
            result = await self.engine.create_or_recognize_subscription(session.id, session)
        except PaymentNotCompleted:
            logger.info(f"Checkout session {session.id} completed without payment yet")
            return WebhookResult(outcome="ignored", detail="payment not completed")

        # Redeliveries re-sync in case an earlier delivery failed after the row was committed
        sync = result.sync or await self.engine.sync_user(result.user_id)
        if not sync.success:
            raise StoreError(
                f"Entitlement sync failed after checkout {session.id}",
                details={"error": sync.error},
            )
        if result.status == "already_synced":
            return WebhookResult(outcome="already_processed")
        return WebhookResult(outcome="processed")

    async def _find_local(self, stripe_sub: StripeSubscription) -> Optional[Subscription]:
        subscription = await self.store.find_subscription_by_stripe_id(stripe_sub.id)
        if subscription is None and stripe_sub.customer:
            subscription = await self.store.find_subscription_by_customer(stripe_sub.customer)
        return subscription

    async def _handle_subscription_changed(self, stripe_sub: StripeSubscription) -> WebhookResult:
        subscription = await self._find_local(stripe_sub)
        if subscription is None:
            # The checkout event has not arrived yet and will converge
            logger.info(f"No local subscription for Stripe subscription {stripe_sub.id} yet")
            return WebhookResult(outcome="ignored", detail="subscription not recorded yet")

        try:
            await self.store.update_billing_period(
                subscription,
                stripe_sub.period_end,
                stripe_subscription_id=stripe_sub.id,
            )
            if stripe_sub.latest_invoice:
                await self.store.record_billing_event(
                    event_type="subscription_updated",
                    payment_status="paid" if stripe_sub.status in ("active", "trialing") else "pending",
                    subscription=subscription,
                    stripe_invoice_id=stripe_sub.latest_invoice,
                    amount_cents=stripe_sub.unit_amount,
                    currency=stripe_sub.currency or subscription.currency,
                    billing_period_start=stripe_sub.period_start,
                    billing_period_end=stripe_sub.period_end,
                )
            new_status = TERMINAL_STATUSES.get(stripe_sub.status)
            if new_status:
                await self.store.transition_subscription(subscription.id, new_status)
        except StoreError:
            await self.store.rollback()
            raise

        return await self._sync(subscription)

    async def _handle_subscription_deleted(self, stripe_sub: StripeSubscription) -> WebhookResult:
        subscription = await self._find_local(stripe_sub)
        if subscription is None:
            logger.info(f"Deleted Stripe subscription {stripe_sub.id} has no local row")
            return WebhookResult(outcome="ignored", detail="subscription not recorded")

        try:
            await self.store.transition_subscription(subscription.id, "cancelled")
        except StoreError:
            await self.store.rollback()
            raise
        return await self._sync(subscription)

    async def _sync(self, subscription: Subscription) -> WebhookResult:
        # Read before syncing; a failed sync expires the row
        user_id = subscription.user_id
        sync = await self.engine.sync_user(user_id)
        if not sync.success:
            raise StoreError(
                f"Entitlement sync failed for user {user_id}",
                details={"error": sync.error},
            )
        return WebhookResult(outcome="processed")

    async def _record_invoice(self, event_type: str, invoice: StripeInvoice, payment_status: str) -> WebhookResult:
        subscription = None
        if invoice.subscription_id:
            subscription = await self.store.find_subscription_by_stripe_id(invoice.subscription_id)
        if subscription is None and invoice.customer:
            subscription = await self.store.find_subscription_by_customer(invoice.customer)

        amount = invoice.amount_paid if payment_status == "paid" else invoice.amount_due
        try:
            recorded = await self.store.record_billing_event(
                event_type=event_type.replace(".", "_"),
                payment_status=payment_status,
                subscription=subscription,
                stripe_invoice_id=invoice.id,
                amount_cents=amount,
                currency=invoice.currency,
                billing_period_start=from_timestamp(invoice.period_start),
                billing_period_end=from_timestamp(invoice.period_end),
            )
            await self.store.commit()
        except StoreError:
            await self.store.rollback()
            raise

        if payment_status == "failed":
            logger.warning(f"Payment failed for invoice {invoice.id}; entitlements unchanged")
        return WebhookResult(outcome="processed" if recorded else "already_processed")
