"""
Stripe gateway.

The only module that talks to Stripe:
- Verifying webhook signatures
- Retrieving checkout sessions (post-checkout polling)
- Creating checkout sessions
- Creating customer portal sessions
"""

import json
import logging
from typing import Any, Dict

import stripe

from tigube_api.config import Settings
from tigube_api.models.user import User
from tigube_api.services.errors import AuthenticationFailure, InvalidEventPayload
from tigube_api.services.events import CheckoutSession
from tigube_api.services.feature_matrix import price_for_role

logger = logging.getLogger(__name__)


class StripeGateway:
    """
    Thin wrapper around the Stripe SDK.

    Constructed with the application settings and injected where it is
    needed, so tests can substitute a fake.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        stripe.api_key = settings.stripe_secret_key

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> Dict[str, Any]:
        """
        Verify a Stripe webhook signature and return the event as a dict.

        Args:
            payload: Raw webhook payload bytes.
            signature: Stripe-Signature header value.

        Returns:
            The verified event as plain JSON.

        Raises:
            AuthenticationFailure: If the signature is missing or invalid.
            InvalidEventPayload: If the signed payload is not valid JSON.
        """
        if not signature:
            raise AuthenticationFailure("Missing Stripe-Signature header")
        if not self.settings.stripe_webhook_secret:
            logger.error("Stripe webhook secret is not configured")
            raise AuthenticationFailure("Webhook secret not configured")

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self.settings.stripe_webhook_secret,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise AuthenticationFailure("Invalid webhook signature") from e
        except ValueError as e:
            raise InvalidEventPayload("Webhook payload is not valid JSON") from e

        return json.loads(payload)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """
        Fetch a checkout session from Stripe.

        Raises:
            stripe.StripeError: If Stripe rejects the request.
        """
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to retrieve checkout session {session_id}: {e}")
            raise
        return CheckoutSession.model_validate(session.to_dict())

    async def create_checkout_session(
        self,
        user: User,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a subscription checkout session for the plan sold to the
        user's role.

        Args:
            user: Buyer; their id becomes the session's client reference.
            success_url: URL to redirect to on success.
            cancel_url: URL to redirect to on cancellation.

        Returns:
            Checkout session URL.
        """
        plan_type, amount, currency = price_for_role(user.user_type)
        metadata = {
            "userId": str(user.id),
            "planType": plan_type,
            "userType": user.user_type,
        }
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                payment_method_types=["card"],
                customer_email=user.email,
                client_reference_id=str(user.id),
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "unit_amount": amount,
                            "recurring": {"interval": "month"},
                            "product_data": {
                                "name": f"{self.settings.stripe_product_name} {plan_type.title()}",
                            },
                        },
                        "quantity": 1,
                    },
                ],
                metadata=metadata,
                subscription_data={"metadata": metadata},
                success_url=success_url,
                cancel_url=cancel_url,
            )
            logger.info(f"Created checkout session {session.id} for user {user.id}")
            return session.url
        except stripe.StripeError as e:
            logger.error(f"Failed to create checkout session for user {user.id}: {e}")
            raise

    async def create_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> str:
        """
        Create a Stripe customer portal session.

        Returns:
            Portal session URL.
        """
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
            )
            logger.info(f"Created portal session for customer: {customer_id}")
            return session.url
        except stripe.StripeError as e:
            logger.error(f"Failed to create portal session: {e}")
            raise
