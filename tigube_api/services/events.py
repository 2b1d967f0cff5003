"""
Typed Stripe payloads.

Stripe delivers loosely shaped JSON. Everything the service reads from
Stripe goes through the models below, so required fields are checked
once at the boundary and the rest of the code works with attributes.
Unknown event kinds parse to ``UnhandledEvent``.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError, field_validator

from tigube_api.services.errors import InvalidEventPayload


def _expandable_id(value: Any) -> Any:
    """Stripe returns either an id or the expanded object."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


# Stripe id fields that may arrive expanded
StripeId = Annotated[Optional[str], BeforeValidator(_expandable_id)]


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StripePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class CheckoutSession(StripePayload):
    """A Stripe checkout session, from an event or from the API."""

    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    client_reference_id: Optional[str] = None
    customer: StripeId = None
    subscription: StripeId = None
    customer_email: Optional[str] = None
    customer_details: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = {}

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Any:
        return value or {}

    @property
    def is_paid(self) -> bool:
        if self.payment_status == "paid":
            return True
        return self.status == "complete" and self.payment_status == "no_payment_required"

    @property
    def user_reference(self) -> Optional[str]:
        return self.client_reference_id or self.metadata.get("userId")

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.get("email"):
            return self.customer_details["email"]
        return self.customer_email


class StripeSubscription(StripePayload):
    """A Stripe subscription object."""

    id: str
    status: str
    customer: StripeId = None
    currency: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    latest_invoice: StripeId = None
    items: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}

    @field_validator("items", "metadata", mode="before")
    @classmethod
    def _mapping_or_empty(cls, value: Any) -> Any:
        return value or {}

    def _first_item(self) -> Dict[str, Any]:
        data = self.items.get("data") or []
        return data[0] if data else {}

    @property
    def unit_amount(self) -> int:
        price = self._first_item().get("price") or {}
        return price.get("unit_amount") or 0

    @property
    def period_start(self) -> Optional[datetime]:
        return from_timestamp(self.current_period_start or self._first_item().get("current_period_start"))

    @property
    def period_end(self) -> Optional[datetime]:
        return from_timestamp(self.current_period_end or self._first_item().get("current_period_end"))


class StripeInvoice(StripePayload):
    """A Stripe invoice object."""

    id: str
    customer: StripeId = None
    subscription: StripeId = None
    currency: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    parent: Optional[Dict[str, Any]] = None

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _expandable_id(details.get("subscription"))


class CheckoutSessionCompleted(BaseModel):
    kind: Literal["checkout_completed"] = "checkout_completed"
    event_id: str
    event_type: str
    session: CheckoutSession


class SubscriptionChanged(BaseModel):
    kind: Literal["subscription_changed"] = "subscription_changed"
    event_id: str
    event_type: str
    subscription: StripeSubscription


class SubscriptionDeleted(BaseModel):
    kind: Literal["subscription_deleted"] = "subscription_deleted"
    event_id: str
    event_type: str
    subscription: StripeSubscription


class InvoicePaymentSucceeded(BaseModel):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    event_id: str
    event_type: str
    invoice: StripeInvoice


class InvoicePaymentFailed(BaseModel):
    kind: Literal["payment_failed"] = "payment_failed"
    event_id: str
    event_type: str
    invoice: StripeInvoice


class UnhandledEvent(BaseModel):
    kind: Literal["unhandled"] = "unhandled"
    event_id: str
    event_type: str


StripeEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]

# Stripe event type -> (event model, name of the field holding data.object)
EVENT_TYPES = {
    "checkout.session.completed": (CheckoutSessionCompleted, "session"),
    "checkout.session.async_payment_succeeded": (CheckoutSessionCompleted, "session"),
    "customer.subscription.created": (SubscriptionChanged, "subscription"),
    "customer.subscription.updated": (SubscriptionChanged, "subscription"),
    "customer.subscription.deleted": (SubscriptionDeleted, "subscription"),
    "invoice.payment_succeeded": (InvoicePaymentSucceeded, "invoice"),
    "invoice.payment_failed": (InvoicePaymentFailed, "invoice"),
}


def parse_event(raw: Mapping[str, Any]) -> StripeEvent:
    """
    Turn a verified Stripe event into its typed variant.

    Raises:
        InvalidEventPayload: If a known event kind lacks required fields.
    """
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise InvalidEventPayload("Event is missing 'id' or 'type'")

    if event_type not in EVENT_TYPES:
        return UnhandledEvent(event_id=event_id, event_type=event_type)

    model, field = EVENT_TYPES[event_type]
    data_object = (raw.get("data") or {}).get("object")
    try:
        return model(event_id=event_id, event_type=event_type, **{field: data_object})
    except ValidationError as e:
        raise InvalidEventPayload(
            f"Malformed {event_type} event {event_id}",
            details={"errors": e.errors(include_url=False, include_input=False)},
        ) from e
