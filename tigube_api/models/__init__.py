"""SQLAlchemy models for the Tigube database."""

from tigube_api.models.billing_history import BillingHistory
from tigube_api.models.subscription import SUBSCRIPTION_STATUSES, Subscription
from tigube_api.models.user import User

__all__ = [
    "User",
    "Subscription",
    "SUBSCRIPTION_STATUSES",
    "BillingHistory",
]
