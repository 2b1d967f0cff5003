"""
Read-side feature gating.

``FeatureAccess`` answers "may this user do X" and "how many X may they
have" from an entitlement snapshot. It never raises and fails closed:
missing data is read as the basic tier, and no user means no access.
"""

from typing import Any, Dict, Optional

from tigube_api.models.user import User
from tigube_api.services.feature_matrix import (
    BASIC,
    ENTITLEMENT_FIELDS,
    FEATURE_MATRIX,
    FLAG_FIELDS,
    LIMIT_FIELDS,
    UNLIMITED,
    Entitlements,
)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


class FeatureAccess:
    """Feature and limit queries over one entitlement snapshot."""

    def __init__(self, entitlements: Optional[Entitlements], has_user: bool):
        self.entitlements = entitlements
        self.has_user = has_user

    @classmethod
    def for_user(cls, user: Optional[User]) -> "FeatureAccess":
        """Snapshot a user row; a never-synced cache counts as missing."""
        if user is None:
            return cls(None, has_user=False)
        if user.entitlements_synced_at is None or user.plan_tier is None:
            return cls(None, has_user=True)
        entitlements = Entitlements(**{name: getattr(user, name) for name in ENTITLEMENT_FIELDS})
        return cls(entitlements, has_user=True)

    @property
    def effective(self) -> Entitlements:
        return self.entitlements or FEATURE_MATRIX[BASIC]

    def check_feature(self, name: str) -> bool:
        if not self.has_user:
            return False
        value = self.effective.value_of(name)
        # Limits are not feature flags
        if not isinstance(value, bool):
            return False
        return value

    def limit_for(self, name: str) -> int:
        """Limit for ``name``; -1 means unlimited, unknown names get 0."""
        if name not in LIMIT_FIELDS:
            return 0
        entitlements = self.effective if self.has_user else FEATURE_MATRIX[BASIC]
        return entitlements.value_of(name)

    def is_unlimited(self, name: str) -> bool:
        return is_unlimited(self.limit_for(name))

    def remaining(self, name: str, used: int) -> Optional[int]:
        """How many more uses are allowed, or None when unlimited."""
        limit = self.limit_for(name)
        if is_unlimited(limit):
            return None
        return max(limit - max(used, 0), 0)

    def can_use(self, name: str, used: int) -> bool:
        if not self.has_user:
            return False
        remaining = self.remaining(name, used)
        return remaining is None or remaining > 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            "has_user": self.has_user,
            "synced": self.entitlements is not None,
            "features": {name: self.check_feature(name) for name in FLAG_FIELDS},
            "limits": {name: self.limit_for(name) for name in LIMIT_FIELDS},
        }
