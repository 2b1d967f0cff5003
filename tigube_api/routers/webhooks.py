"""Webhook endpoints for external service integrations."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from tigube_api.dependencies import get_stripe_gateway, get_webhook_processor
from tigube_api.services.errors import (
    AuthenticationFailure,
    EntitlementError,
    InvalidEventPayload,
    ProfileNotFound,
    UnknownPlanAmount,
)
from tigube_api.services.events import parse_event
from tigube_api.services.stripe_gateway import StripeGateway
from tigube_api.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Processes subscription lifecycle events:
    - checkout.session.completed: Record the subscription and grant entitlements
    - customer.subscription.created/updated: Mirror status, re-derive entitlements
    - customer.subscription.deleted: Cancel and downgrade
    - invoice.payment_succeeded/failed: Billing history only

    No authentication required (uses Stripe signature verification).
    Any processing failure answers non-2xx so Stripe redelivers.

    Raises:
        HTTPException(400): If the signature or payload is invalid.
        HTTPException(422): If a checkout paid an unknown amount.
        HTTPException(500): If processing failed.
    """
    payload = await request.body()

    try:
        raw_event = gateway.verify_webhook_signature(
            payload=payload,
            signature=stripe_signature or "",
        )
        event = parse_event(raw_event)
    except AuthenticationFailure as e:
        logger.warning(f"Rejected Stripe webhook: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )
    except InvalidEventPayload as e:
        logger.error(f"Invalid Stripe webhook payload: {e.message} {e.details}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid event payload",
        )

    try:
        result = await processor.handle(event)
    except UnknownPlanAmount as e:
        logger.error(f"Stripe event {event.event_id} ({event.event_type}): {e.message}")
        raise HTTPException(
            status_code=422,
            detail="Unknown plan amount",
        )
    except ProfileNotFound as e:
        logger.error(f"Stripe event {event.event_id} ({event.event_type}): {e.message}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found",
        )
    except EntitlementError as e:
        logger.error(
            f"Error processing Stripe event {event.event_id} ({event.event_type}): "
            f"{e.code}: {e.message} {e.details}"
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )
    except Exception:
        logger.exception(f"Unexpected error processing Stripe event {event.event_id} ({event.event_type})")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )

    return {"received": True, "outcome": result.outcome}
