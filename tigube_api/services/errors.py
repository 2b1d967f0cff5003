"""
Error kinds raised by the billing and entitlement services.

Every error carries a stable machine-readable code and the HTTP status
routers answer with. Messages are safe to log; routers decide what an
end user gets to see.
"""

from typing import Any, Dict, Optional

from fastapi import status


class EntitlementError(Exception):
    """Base class for billing and entitlement failures."""

    code = "entitlement_error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationFailure(EntitlementError):
    """Missing or invalid Stripe signature or bearer token."""

    code = "authentication_failure"
    status_code = status.HTTP_401_UNAUTHORIZED


class PaymentNotCompleted(EntitlementError):
    """Checkout session exists but is not paid yet. Safe to retry later."""

    code = "payment_not_completed"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class UnknownPlanAmount(EntitlementError):
    """Paid amount does not map to any plan. Needs manual investigation."""

    code = "unknown_plan_amount"
    status_code = 422


class StoreError(EntitlementError):
    """Transient persistence failure. Safe to retry."""

    code = "store_error"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ProfileNotFound(EntitlementError):
    """Target user row does not exist."""

    code = "profile_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ProfileUnavailable(EntitlementError):
    """User row did not appear within the bounded wait after sign-up."""

    code = "profile_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidEventPayload(EntitlementError):
    """Known Stripe event kind with missing or malformed required fields."""

    code = "invalid_event_payload"
    status_code = status.HTTP_400_BAD_REQUEST
