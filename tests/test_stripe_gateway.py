import json

import pytest
import stripe

from tigube_api.services.errors import AuthenticationFailure, InvalidEventPayload
from tigube_api.services.stripe_gateway import StripeGateway

from conftest import WEBHOOK_SECRET, checkout_payload, make_settings, sign_payload, stripe_event


@pytest.fixture
def gateway() -> StripeGateway:
    return StripeGateway(make_settings())


async def test_retrieve_checkout_session_reads_the_stripe_object(gateway, monkeypatch):
    payload = checkout_payload("cs_live", "2b1f1c55-0f6a-4d6e-9a43-2f0f3f7c9c11", metadata={"userType": "owner"})
    retrieved = []

    def fake_retrieve(session_id, **params):
        retrieved.append(session_id)
        return stripe.StripeObject.construct_from(payload, "sk_test_fake")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    session = await gateway.retrieve_checkout_session("cs_live")

    assert retrieved == ["cs_live"]
    assert session.id == "cs_live"
    assert session.amount_total == 490
    assert session.customer == "cus_test_1"
    assert session.user_reference == "2b1f1c55-0f6a-4d6e-9a43-2f0f3f7c9c11"
    assert session.is_paid is True


def test_verify_webhook_signature(gateway):
    payload = json.dumps(stripe_event("customer.created", {"id": "cus_1"})).encode()

    event = gateway.verify_webhook_signature(payload, sign_payload(payload, WEBHOOK_SECRET))

    assert event["type"] == "customer.created"


def test_verify_webhook_signature_rejects_wrong_secret(gateway):
    payload = json.dumps(stripe_event("customer.created", {"id": "cus_1"})).encode()

    with pytest.raises(AuthenticationFailure):
        gateway.verify_webhook_signature(payload, sign_payload(payload, "whsec_other"))


def test_verify_webhook_signature_rejects_garbage(gateway):
    payload = b"not json"

    with pytest.raises(InvalidEventPayload):
        gateway.verify_webhook_signature(payload, sign_payload(payload, WEBHOOK_SECRET))
