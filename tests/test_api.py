import uuid
from datetime import datetime, timezone

import httpx
from fastapi import Depends, FastAPI

from tigube_api.dependencies import get_current_user_with_db, require_feature
from tigube_api.models.user import User
from tigube_api.services.errors import StoreError
from tigube_api.services.feature_access import FeatureAccess
from tigube_api.services.feature_matrix import ENTITLEMENT_FIELDS, features_for

from conftest import bearer, checkout_payload, post_event, reload, stripe_event


def entitlements_of(user: User) -> dict:
    return {name: getattr(user, name) for name in ENTITLEMENT_FIELDS}


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["name"] == "Tigube API"


async def test_invalid_token_is_rejected(client, make_user):
    await make_user()

    bad = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    wrong_scheme = await client.get("/auth/me", headers={"Authorization": "Token abc"})

    assert bad.status_code == 401
    assert wrong_scheme.status_code == 401


async def test_me_requires_a_profile(client):
    response = await client.get("/auth/me", headers=bearer(uuid.uuid4()))

    assert response.status_code == 404


async def test_me(client, make_user):
    user = await make_user(first_name="Ada")

    response = await client.get("/auth/me", headers=bearer(user.id))

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == str(user.id)
    assert body["first_name"] == "Ada"
    assert body["user_type"] == "owner"
    assert body["plan_tier"] is None


async def test_unsynced_entitlements_read_as_basic(client, make_user):
    user = await make_user(premium_badge=True, show_ads=False)

    response = await client.get("/entitlements/me", headers=bearer(user.id))

    assert response.status_code == 200
    body = response.json()
    assert body["plan_tier"] == "basic"
    assert body["synced"] is False
    assert body["features"]["premium_badge"] is False
    assert body["features"]["show_ads"] is True
    assert body["limits"]["max_contact_requests"] == 3


async def test_manual_sync(client, db, make_user):
    user = await make_user(premium_badge=True)

    response = await client.post("/billing/sync", headers=bearer(user.id))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["plan_tier"] == "basic"
    assert (await reload(db, User, user.id)).premium_badge is False

    entitlements = await client.get("/entitlements/me", headers=bearer(user.id))
    assert entitlements.json()["synced"] is True


async def test_manual_sync_failure_hides_details(client, make_user, monkeypatch):
    user = await make_user()

    async def broken_upsert(self, user_id, tier):
        raise StoreError("connection to server at 10.0.0.5 lost")

    monkeypatch.setattr("tigube_api.services.entitlement_store.EntitlementStore.upsert_entitlements", broken_upsert)
    response = await client.post("/billing/sync", headers=bearer(user.id))

    assert response.status_code == 503
    assert "try again" in response.json()["detail"]
    assert "10.0.0.5" not in response.text


async def test_every_entry_point_converges(client, db, make_user, stripe_gateway):
    user = await make_user()
    stripe_gateway.sessions["cs_poll"] = checkout_payload("cs_poll", user.id)

    polled = await client.post(
        "/billing/sync-checkout-session",
        json={"checkout_session_id": "cs_poll"},
        headers=bearer(user.id),
    )
    after_poll = entitlements_of(await reload(db, User, user.id))

    webhook = await post_event(
        client,
        stripe_event("checkout.session.completed", checkout_payload("cs_poll", user.id), "evt_poll"),
    )
    after_webhook = entitlements_of(await reload(db, User, user.id))

    manual = await client.post("/billing/sync", headers=bearer(user.id))
    after_manual = entitlements_of(await reload(db, User, user.id))

    assert polled.status_code == 200
    assert polled.json()["status"] == "newly_synced"
    assert polled.json()["plan_tier"] == "premium"
    assert webhook.json()["outcome"] == "already_processed"
    assert manual.json()["plan_tier"] == "premium"
    assert after_poll == after_webhook == after_manual == features_for("premium").model_dump()


async def test_repolling_repairs_a_failed_checkout_sync(client, db, make_user, stripe_gateway, flaky_upsert):
    user = await make_user()
    stripe_gateway.sessions["cs_poll"] = checkout_payload("cs_poll", user.id)
    request = {"checkout_session_id": "cs_poll"}

    first = await client.post("/billing/sync-checkout-session", json=request, headers=bearer(user.id))

    assert first.status_code == 503
    assert "payment was recorded" in first.json()["detail"]

    second = await client.post("/billing/sync-checkout-session", json=request, headers=bearer(user.id))

    assert second.status_code == 200
    assert second.json()["status"] == "already_synced"
    assert second.json()["plan_tier"] == "premium"
    assert entitlements_of(await reload(db, User, user.id)) == features_for("premium").model_dump()


async def test_repolling_a_cancelled_checkout_reports_basic(client, db, make_user, stripe_gateway):
    user = await make_user()
    stripe_gateway.sessions["cs_poll"] = checkout_payload("cs_poll", user.id)
    request = {"checkout_session_id": "cs_poll"}
    await client.post("/billing/sync-checkout-session", json=request, headers=bearer(user.id))
    deleted = {"id": "sub_test_1", "object": "subscription", "status": "canceled", "customer": "cus_test_1"}
    await post_event(client, stripe_event("customer.subscription.deleted", deleted, "evt_deleted"))

    response = await client.post("/billing/sync-checkout-session", json=request, headers=bearer(user.id))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "already_synced"
    assert body["plan_tier"] == "basic"
    assert body["message"] == "This subscription is no longer active."
    assert (await reload(db, User, user.id)).plan_tier == "basic"


async def test_checkout_session_of_another_user(client, make_user, stripe_gateway):
    user = await make_user()
    stripe_gateway.sessions["cs_other"] = checkout_payload("cs_other", uuid.uuid4())

    response = await client.post(
        "/billing/sync-checkout-session",
        json={"checkout_session_id": "cs_other"},
        headers=bearer(user.id),
    )

    assert response.status_code == 403


async def test_unpaid_checkout_session(client, make_user, stripe_gateway):
    user = await make_user()
    stripe_gateway.sessions["cs_open"] = checkout_payload("cs_open", user.id, payment_status="unpaid")

    response = await client.post(
        "/billing/sync-checkout-session",
        json={"checkout_session_id": "cs_open"},
        headers=bearer(user.id),
    )

    assert response.status_code == 402


async def test_checkout_session_before_profile_exists(client, stripe_gateway):
    user_id = uuid.uuid4()
    stripe_gateway.sessions["cs_new"] = checkout_payload("cs_new", user_id)

    response = await client.post(
        "/billing/sync-checkout-session",
        json={"checkout_session_id": "cs_new"},
        headers=bearer(user_id),
    )

    assert response.status_code == 503


async def test_create_checkout_session(client, make_user, stripe_gateway):
    user = await make_user()

    response = await client.post(
        "/billing/create-checkout-session",
        json={"success_url": "https://tigube.test/ok", "cancel_url": "https://tigube.test/cancel"},
        headers=bearer(user.id),
    )

    assert response.status_code == 200
    assert response.json()["checkout_url"] == "https://checkout.stripe.test/session"
    assert stripe_gateway.checkout_calls == [{"user_id": str(user.id), "success_url": "https://tigube.test/ok"}]


async def test_create_checkout_session_rejects_plan_of_other_role(client, make_user, stripe_gateway):
    user = await make_user()

    response = await client.post(
        "/billing/create-checkout-session",
        json={"plan": "professional", "success_url": "https://a.test", "cancel_url": "https://b.test"},
        headers=bearer(user.id),
    )

    assert response.status_code == 400
    assert stripe_gateway.checkout_calls == []


async def test_portal_session(client, make_user, stripe_gateway):
    user = await make_user()
    headers = bearer(user.id)

    before = await client.post("/billing/create-portal-session", json={"return_url": "https://a.test"}, headers=headers)
    await post_event(client, stripe_event("checkout.session.completed", checkout_payload("cs_1", user.id)))
    after = await client.post("/billing/create-portal-session", json={"return_url": "https://a.test"}, headers=headers)

    assert before.status_code == 400
    assert after.status_code == 200
    assert stripe_gateway.portal_calls == [{"customer_id": "cus_test_1", "return_url": "https://a.test"}]


async def test_subscription_reads(client, make_user):
    user = await make_user()
    headers = bearer(user.id)

    empty = await client.get("/billing/subscription", headers=headers)
    await post_event(client, stripe_event("checkout.session.completed", checkout_payload("cs_1", user.id)))
    current = await client.get("/billing/subscription", headers=headers)
    history = await client.get("/billing/subscriptions", headers=headers)
    billing = await client.get("/billing/history", headers=headers)

    assert empty.json() == {"plan_tier": "basic", "subscription": None}
    assert current.json()["plan_tier"] == "premium"
    assert current.json()["subscription"]["amount_paid_cents"] == 490
    assert [row["status"] for row in history.json()] == ["active"]
    assert billing.status_code == 200
    assert billing.json() == []


async def test_admin_endpoints_require_admin(client, make_user):
    user = await make_user()

    response = await client.post("/admin/sync-all", headers=bearer(user.id))

    assert response.status_code == 403


async def test_admin_sync_user(client, db, make_user):
    admin = await make_user(email="admin@example.com", role="admin")
    user = await make_user(premium_badge=True)

    response = await client.post(f"/admin/users/{user.id}/sync", headers=bearer(admin.id))
    missing = await client.post(f"/admin/users/{uuid.uuid4()}/sync", headers=bearer(admin.id))

    assert response.status_code == 200
    assert response.json()["plan_tier"] == "basic"
    assert (await reload(db, User, user.id)).premium_badge is False
    assert missing.status_code == 404


async def test_admin_bulk_sync_and_stats(client, make_user):
    admin = await make_user(email="admin@example.com", role="admin")
    owner = await make_user(premium_badge=True)
    headers = bearer(admin.id)
    await post_event(client, stripe_event("checkout.session.completed", checkout_payload("cs_1", owner.id)))

    before = await client.get("/admin/subscription-stats", headers=headers)
    bulk = await client.post("/admin/sync-all", headers=headers)
    after = await client.get("/admin/subscription-stats", headers=headers)

    assert before.json()["drift_count"] == 1
    assert before.json()["drift"][0]["email"] == "admin@example.com"
    assert bulk.json() == {"total_users": 2, "synced_successfully": 2, "failed_syncs": 0, "errors": []}
    stats = after.json()
    assert stats["total_users"] == 2
    assert stats["premium_badge_users"] == 1
    assert stats["active_subscriptions"] == 1
    assert stats["drift_count"] == 0


async def test_require_feature():
    gated = FastAPI()

    @gated.get("/search/advanced")
    async def advanced_search(access: FeatureAccess = Depends(require_feature("advanced_filters"))):
        return {"limit": access.limit_for("max_contact_requests")}

    premium_user = User(
        email="p@example.com",
        plan_tier="premium",
        entitlements_synced_at=None,
        **features_for("premium").model_dump(),
    )
    transport = httpx.ASGITransport(app=gated)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        gated.dependency_overrides[get_current_user_with_db] = lambda: premium_user
        unsynced = await c.get("/search/advanced")

        premium_user.entitlements_synced_at = datetime.now(timezone.utc)
        synced = await c.get("/search/advanced")

    assert unsynced.status_code == 402
    assert synced.status_code == 200
    assert synced.json() == {"limit": -1}
