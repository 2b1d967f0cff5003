"""
Plan tiers, the entitlements each tier grants, and the price table.

This module is the single authority for "what does tier T grant" and
"which plan did amount A buy". Both tables are immutable at runtime.
"""

from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from tigube_api.services.errors import UnknownPlanAmount

BASIC = "basic"
PREMIUM = "premium"
PROFESSIONAL = "professional"

PLAN_TIERS = (BASIC, PREMIUM, PROFESSIONAL)
PAID_TIERS = (PREMIUM, PROFESSIONAL)

OWNER = "owner"
CARETAKER = "caretaker"

UNLIMITED = -1


class Entitlements(BaseModel):
    """Concrete limits and flags a user has."""

    model_config = ConfigDict(frozen=True)

    max_contact_requests: int
    max_bookings: int
    max_environment_images: int
    advanced_filters: bool
    priority_ranking: bool
    premium_badge: bool
    show_ads: bool
    search_priority: int

    def value_of(self, name: str) -> Optional[Union[int, bool]]:
        """Return the named entitlement, or None for unknown names."""
        if name not in type(self).model_fields:
            return None
        return getattr(self, name)


ENTITLEMENT_FIELDS = tuple(Entitlements.model_fields)
LIMIT_FIELDS = ("max_contact_requests", "max_bookings", "max_environment_images", "search_priority")
FLAG_FIELDS = ("advanced_filters", "priority_ranking", "premium_badge", "show_ads")

FEATURE_MATRIX: Mapping[str, Entitlements] = MappingProxyType({
    BASIC: Entitlements(
        max_contact_requests=3,
        max_bookings=3,
        max_environment_images=0,
        advanced_filters=False,
        priority_ranking=False,
        premium_badge=False,
        show_ads=True,
        search_priority=0,
    ),
    PREMIUM: Entitlements(
        max_contact_requests=UNLIMITED,
        max_bookings=3,
        max_environment_images=0,
        advanced_filters=True,
        priority_ranking=True,
        premium_badge=True,
        show_ads=False,
        search_priority=1,
    ),
    PROFESSIONAL: Entitlements(
        max_contact_requests=UNLIMITED,
        max_bookings=UNLIMITED,
        max_environment_images=6,
        advanced_filters=True,
        priority_ranking=True,
        premium_badge=True,
        show_ads=False,
        search_priority=2,
    ),
})

# (amount in cents, currency) -> (plan tier, user role)
PRICE_TABLE: Mapping[Tuple[int, str], Tuple[str, str]] = MappingProxyType({
    (490, "eur"): (PREMIUM, OWNER),
    (1290, "eur"): (PROFESSIONAL, CARETAKER),
})

# Plan sold to each role at checkout
ROLE_PLANS: Mapping[str, str] = MappingProxyType({
    OWNER: PREMIUM,
    CARETAKER: PROFESSIONAL,
})


def features_for(tier: Optional[str]) -> Entitlements:
    """Entitlements granted by ``tier``; unknown tiers get basic."""
    return FEATURE_MATRIX.get(tier or BASIC, FEATURE_MATRIX[BASIC])


def normalize_tier(tier: Optional[str]) -> str:
    return tier if tier in FEATURE_MATRIX else BASIC


def plan_for_amount(amount: Optional[int], currency: Optional[str]) -> Tuple[str, str]:
    """
    Map a paid amount to the plan it buys.

    Args:
        amount: Amount in minor currency units.
        currency: ISO currency code, any case.

    Returns:
        Tuple of (plan tier, user role).

    Raises:
        UnknownPlanAmount: If the price is not in the price table.
    """
    key = (amount, (currency or "").lower())
    plan = PRICE_TABLE.get(key)  # type: ignore[arg-type]
    if plan is None:
        raise UnknownPlanAmount(
            f"No plan is sold for {amount} {currency}",
            details={"amount": amount, "currency": currency},
        )
    return plan


def price_for_role(role: str) -> Tuple[str, int, str]:
    """Return (plan tier, amount in cents, currency) sold to ``role``."""
    tier = ROLE_PLANS.get(role)
    if tier is None:
        raise ValueError(f"Unknown user role: {role}")
    for (amount, currency), (plan, plan_role) in PRICE_TABLE.items():
        if plan == tier and plan_role == role:
            return tier, amount, currency
    raise ValueError(f"No price configured for role: {role}")
