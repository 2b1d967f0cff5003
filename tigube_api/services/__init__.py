"""Service modules for Tigube API."""

from tigube_api.services.auth import AuthService
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.feature_access import FeatureAccess
from tigube_api.services.stripe_gateway import StripeGateway
from tigube_api.services.sync_engine import SyncEngine
from tigube_api.services.webhook_processor import WebhookProcessor

__all__ = [
    "AuthService",
    "EntitlementStore",
    "FeatureAccess",
    "StripeGateway",
    "SyncEngine",
    "WebhookProcessor",
]
