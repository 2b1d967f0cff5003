from datetime import datetime, timezone

import pytest

from tigube_api.models.user import User
from tigube_api.services.feature_access import FeatureAccess
from tigube_api.services.feature_matrix import FEATURE_MATRIX, FLAG_FIELDS, LIMIT_FIELDS, features_for


def test_missing_entitlements_read_as_basic():
    access = FeatureAccess(None, has_user=True)
    basic = FEATURE_MATRIX["basic"]

    for name in FLAG_FIELDS:
        assert access.check_feature(name) is basic.value_of(name)
    for name in LIMIT_FIELDS:
        assert access.limit_for(name) == basic.value_of(name)


def test_no_user_gets_nothing():
    access = FeatureAccess(features_for("professional"), has_user=False)

    assert access.check_feature("premium_badge") is False
    assert access.check_feature("show_ads") is False
    assert access.limit_for("max_bookings") == 3
    assert access.can_use("max_bookings", 0) is False


def test_entitlement_values_are_used_when_present():
    access = FeatureAccess(features_for("premium"), has_user=True)

    assert access.check_feature("advanced_filters") is True
    assert access.check_feature("show_ads") is False
    assert access.limit_for("max_contact_requests") == -1


def test_unknown_names_are_denied():
    access = FeatureAccess(features_for("professional"), has_user=True)

    assert access.check_feature("teleportation") is False
    assert access.check_feature("max_bookings") is False
    assert access.limit_for("teleportation") == 0


def test_unlimited_is_never_zero_remaining():
    access = FeatureAccess(features_for("professional"), has_user=True)

    assert access.limit_for("max_bookings") == -1
    assert access.is_unlimited("max_bookings") is True
    assert access.remaining("max_bookings", 0) is None
    assert access.remaining("max_bookings", 10_000) is None
    assert access.can_use("max_bookings", 10_000) is True


@pytest.mark.parametrize("used, remaining, allowed", [(0, 3, True), (2, 1, True), (3, 0, False), (7, 0, False)])
def test_finite_limits(used, remaining, allowed):
    access = FeatureAccess(features_for("premium"), has_user=True)

    assert access.is_unlimited("max_bookings") is False
    assert access.remaining("max_bookings", used) == remaining
    assert access.can_use("max_bookings", used) is allowed


def test_for_user_treats_unsynced_cache_as_missing():
    user = User(
        email="a@example.com",
        plan_tier=None,
        entitlements_synced_at=None,
        premium_badge=True,
        max_contact_requests=-1,
        max_bookings=3,
        max_environment_images=0,
        advanced_filters=True,
        priority_ranking=True,
        show_ads=False,
        search_priority=1,
    )
    access = FeatureAccess.for_user(user)

    assert access.entitlements is None
    assert access.check_feature("premium_badge") is False


def test_for_user_reads_synced_cache():
    premium = features_for("premium")
    user = User(
        email="a@example.com",
        plan_tier="premium",
        entitlements_synced_at=datetime.now(timezone.utc),
        **premium.model_dump(),
    )

    assert FeatureAccess.for_user(user).entitlements == premium
    assert FeatureAccess.for_user(None).has_user is False


def test_snapshot():
    snapshot = FeatureAccess(None, has_user=True).snapshot()

    assert snapshot["synced"] is False
    assert snapshot["features"]["show_ads"] is True
    assert snapshot["limits"]["max_contact_requests"] == 3
