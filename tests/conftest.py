"""Shared fixtures: in-memory record store, fake Stripe client, app client."""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import os
import time
from typing import Any, Optional

# Configure before any app module reads the environment
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_PRICE_PREMIUM", "price_premium")

import jwt  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from auth.dependencies import get_current_user, get_reconciler  # noqa: E402
from index import app  # noqa: E402
from models.subscription import (  # noqa: E402
    PlanProjection,
    PlanType,
    ProjectionWriteMode,
    SubscriptionRecord,
    SubscriptionStatus,
    TERMINAL_STATUSES,
)
from services.errors import StoreWriteError  # noqa: E402
from services.rate_limiter import RequestRateLimiter  # noqa: E402
from services.reconciler import Reconciler  # noqa: E402
from services.stripe_service import StripeService  # noqa: E402

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
JWT_SECRET = os.environ["SUPABASE_JWT_SECRET"]
NOW = int(time.time())
DAY = 86400


# ── Fakes ─────────────────────────────────────────────────────────────────────

class FakeRecordStore:
    """Same contract as SupabaseRecordStore, backed by dicts."""

    def __init__(self):
        self.subscriptions: dict[str, SubscriptionRecord] = {}
        self.projections: dict[str, PlanProjection] = {}
        self.subscription_writes = 0
        self.api_keys: dict[str, str] = {}
        self.fail_writes = False
        self.failing_reads = 0

    def _maybe_fail_read(self):
        if self.failing_reads:
            self.failing_reads -= 1
            raise ConnectionError("connection reset by peer")

    def _maybe_fail_write(self):
        if self.fail_writes:
            raise StoreWriteError("Failed to update subscription", details="database unavailable")

    async def get_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self.subscriptions.get(subscription_id)

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        self._maybe_fail_write()
        self.subscriptions[record.subscription_id] = record
        self.subscription_writes += 1
        return record

    async def save_subscription(self, record: SubscriptionRecord,
                                expected: Optional[SubscriptionRecord]) -> bool:
        self._maybe_fail_write()
        if self.subscriptions.get(record.subscription_id) != expected:
            return False
        self.subscriptions[record.subscription_id] = record
        self.subscription_writes += 1
        return True

    async def query_active_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        self._maybe_fail_read()
        active = [r for r in self.subscriptions.values()
                  if r.account_id == account_id and r.status == SubscriptionStatus.ACTIVE]
        return max(active, key=lambda r: r.created_at.timestamp() if r.created_at else 0, default=None)

    async def get_latest_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        rows = [r for r in self.subscriptions.values() if r.account_id == account_id]
        return max(rows, key=lambda r: r.created_at.timestamp() if r.created_at else 0, default=None)

    async def cancel_account_subscriptions(self, account_id, canceled_at, ended_at=None) -> None:
        self._maybe_fail_write()
        for key, record in self.subscriptions.items():
            if record.account_id == account_id and record.status not in TERMINAL_STATUSES:
                self.subscriptions[key] = record.model_copy(update={
                    "status": SubscriptionStatus.CANCELED,
                    "canceled_at": canceled_at,
                    "ended_at": ended_at or canceled_at,
                })

    async def get_plan_projection(self, account_id: str) -> Optional[PlanProjection]:
        return self.projections.get(account_id)

    async def upsert_plan_projection(self, account_id, plan, mode=ProjectionWriteMode.OVERWRITE):
        self._maybe_fail_write()
        existing = self.projections.get(account_id)
        keep_existing = (
            mode == ProjectionWriteMode.INSERT_IF_ABSENT
            or (mode == ProjectionWriteMode.UPGRADE_ONLY and plan != PlanType.PREMIUM)
        )
        if existing is not None and keep_existing:
            return existing
        projection = PlanProjection.for_plan(account_id, plan)
        self.projections[account_id] = projection
        return projection

    async def update_api_key(self, account_id: str, api_key: str) -> None:
        self._maybe_fail_write()
        if account_id in self.projections:
            self.api_keys[account_id] = api_key


class FakeStripeService(StripeService):
    """Real signature verification, canned provider objects."""

    def __init__(self):
        super().__init__(webhook_secret=WEBHOOK_SECRET)
        self.subscriptions: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.checkout_sessions: dict[str, dict] = {}
        self.created_customers: list[tuple[str, str]] = []
        self.failing_reads = 0
        self.failing_subscription_reads = 0
        self.subscription_reads = 0

    def _maybe_fail_read(self):
        if self.failing_reads:
            self.failing_reads -= 1
            raise ConnectionError("stripe unreachable")

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.subscription_reads += 1
        if self.failing_subscription_reads:
            self.failing_subscription_reads -= 1
            raise ConnectionError("stripe unreachable")
        return self.subscriptions[subscription_id]

    async def retrieve_customer(self, customer_id: str) -> dict:
        return self.customers.get(customer_id, {"id": customer_id, "metadata": {}})

    async def list_customers(self, email: str) -> list[dict]:
        self._maybe_fail_read()
        return [c for c in self.customers.values() if c.get("email") == email]

    async def list_active_subscriptions(self, customer_id: str) -> list[dict]:
        return [s for s in self.subscriptions.values()
                if s.get("customer") == customer_id and s.get("status") == "active"]

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        self._maybe_fail_read()
        return self.checkout_sessions[session_id]

    async def create_customer(self, account_id: str, email: str) -> str:
        customer_id = f"cus_new_{account_id}"
        self.created_customers.append((account_id, email))
        self.customers[customer_id] = {"id": customer_id, "email": email, "metadata": {"userId": account_id}}
        return customer_id

    async def create_checkout_session(self, account_id, email, price_id=None) -> dict:
        if not (price_id or self.premium_price_id):
            raise ValueError("No price configured for checkout")
        return {"session_id": f"cs_{account_id}", "url": f"https://checkout.stripe.test/cs_{account_id}"}

    async def create_portal_session(self, customer_id: str) -> str:
        return f"https://billing.stripe.test/{customer_id}"


# ── Builders ──────────────────────────────────────────────────────────────────

def make_subscription(
    sub_id: str = "sub_1",
    account_id: Optional[str] = "user_a",
    status: str = "active",
    cancel_at_period_end: bool = False,
    period_start: int = NOW - DAY,
    period_end: int = NOW + 29 * DAY,
    created: int = NOW - DAY,
    customer: Any = "cus_1",
    **extra,
) -> dict:
    subscription = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "created": created,
        "ended_at": None,
        "cancel_at": None,
        "canceled_at": None,
        "trial_start": None,
        "trial_end": None,
        "metadata": {"userId": account_id} if account_id else {},
        "items": {"data": [{"price": {"id": "price_premium"}, "quantity": 1}]},
    }
    subscription.update(extra)
    return subscription


def make_event(event_type: str, obj: dict, created: int = NOW, event_id: Optional[str] = None) -> dict:
    return {
        "id": event_id or f"evt_{event_type}_{created}",
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a stripe-signature header for payload."""
    timestamp = timestamp if timestamp is not None else int(time.time())
    signed = f"{timestamp}.{payload.decode()}"
    signature = hmac.new(secret.encode(), signed.encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict) -> tuple[bytes, str]:
    payload = json.dumps(event).encode()
    return payload, sign_payload(payload)


def make_token(user_id: str = "user_a", email: str = "a@example.com", **claims) -> str:
    payload = {"sub": user_id, "email": email, "aud": "authenticated", "exp": int(time.time()) + 3600}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def provider() -> FakeStripeService:
    return FakeStripeService()


@pytest.fixture
def reconciler(store, provider) -> Reconciler:
    return Reconciler(store, provider)


@pytest.fixture(autouse=True)
def no_backoff_sleep(monkeypatch):
    """Record backoff delays instead of sleeping; zero-length sleeps still yield."""
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, result=None):
        if delay:
            delays.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays


@pytest_asyncio.fixture
async def client(reconciler):
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.state.settings_rate_limiter = RequestRateLimiter()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def as_user():
    """Bypass JWT verification for a fixed user."""
    app.dependency_overrides[get_current_user] = lambda: {"id": "user_a", "email": "a@example.com"}
    yield
    app.dependency_overrides.pop(get_current_user, None)
