from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
import uuid
from collections.abc import AsyncGenerator
from typing import Any, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import httpx
import pytest
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tigube_api.config import Settings
from tigube_api.db.database import Base, get_db
from tigube_api.dependencies import get_auth_service, get_profile_wait_policy, get_stripe_gateway
from tigube_api.main import app
from tigube_api.models.user import User
from tigube_api.services.auth import AuthService
from tigube_api.services.entitlement_store import EntitlementStore
from tigube_api.services.errors import StoreError
from tigube_api.services.events import CheckoutSession
from tigube_api.services.profile_wait import ProfileWaitPolicy
from tigube_api.services.stripe_gateway import StripeGateway
from tigube_api.services.sync_engine import SyncEngine

JWT_SECRET = "test-jwt-secret"
WEBHOOK_SECRET = "whsec_test_secret"


def make_settings(**overrides: Any) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite://",
        "supabase_url": "",
        "supabase_jwt_secret": JWT_SECRET,
        "stripe_secret_key": "sk_test_fake",
        "stripe_webhook_secret": WEBHOOK_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def bearer(user_id: uuid.UUID | str, email: str = "user@example.com") -> Dict[str, str]:
    token = jwt.encode(
        {
            "sub": str(user_id),
            "email": email,
            "aud": "authenticated",
            "exp": int(time.time()) + 3600,
        },
        JWT_SECRET,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


def checkout_payload(
    session_id: str,
    user_id: uuid.UUID | str | None,
    amount: int = 490,
    currency: str = "eur",
    payment_status: str = "paid",
    **extra: Any,
) -> Dict[str, Any]:
    session = {
        "id": session_id,
        "object": "checkout.session",
        "status": "complete",
        "payment_status": payment_status,
        "amount_total": amount,
        "currency": currency,
        "client_reference_id": str(user_id) if user_id else None,
        "customer": "cus_test_1",
        "subscription": "sub_test_1",
        "customer_details": {"email": "owner@example.com"},
        "metadata": {},
    }
    session.update(extra)
    return session


def stripe_event(event_type: str, data_object: Dict[str, Any], event_id: str = "evt_test_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }


class FakeStripeGateway(StripeGateway):
    """Real signature verification, canned Stripe API responses."""

    def __init__(self) -> None:
        super().__init__(make_settings())
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.checkout_calls: List[Dict[str, Any]] = []
        self.portal_calls: List[Dict[str, Any]] = []

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        return CheckoutSession.model_validate(self.sessions[session_id])

    async def create_checkout_session(self, user: User, success_url: str, cancel_url: str) -> str:
        self.checkout_calls.append({"user_id": str(user.id), "success_url": success_url})
        return "https://checkout.stripe.test/session"

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_calls.append({"customer_id": customer_id, "return_url": return_url})
        return "https://billing.stripe.test/portal"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def store(db) -> EntitlementStore:
    return EntitlementStore(db)


@pytest.fixture
def sync_engine(store) -> SyncEngine:
    return SyncEngine(store)


@pytest.fixture
def make_user(db):
    async def _make_user(
        email: str = "owner@example.com",
        user_type: str = "owner",
        role: str = "user",
        **fields: Any,
    ) -> User:
        user = User(email=email, user_type=user_type, role=role, **fields)
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
def flaky_upsert(monkeypatch) -> List[Any]:
    """Make the first entitlement write fail; later writes go through. Returns the call log."""
    original = EntitlementStore.upsert_entitlements
    calls: List[Any] = []

    async def _upsert(self, user_id, tier):
        calls.append(user_id)
        if len(calls) == 1:
            raise StoreError("connection reset during entitlement write")
        return await original(self, user_id, tier)

    monkeypatch.setattr(EntitlementStore, "upsert_entitlements", _upsert)
    return calls


@pytest.fixture
def stripe_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
async def client(session_maker, stripe_gateway) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as session:
            yield session

    auth_service = AuthService(make_settings())
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_auth_service] = lambda: auth_service
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway
    app.dependency_overrides[get_profile_wait_policy] = lambda: ProfileWaitPolicy(
        attempts=3, initial_delay=0, max_delay=0
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def post_event(client: httpx.AsyncClient, body: Dict[str, Any], signature: Optional[str] = None):
    payload = json.dumps(body).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign_payload(payload)
    return client.post("/webhooks/stripe", content=payload, headers=headers)


async def reload(db: AsyncSession, model: Any, ident: Any) -> Any:
    """
    Re-read a row written by another session.

    Commits afterwards so the shared test connection is not left inside
    a transaction when the next request starts one.
    """
    obj = await db.get(model, ident, populate_existing=True)
    await db.commit()
    return obj
