"""
Pytest configuration and fixtures for testing
"""
import hashlib
import hmac
import os
import time
from datetime import datetime, timedelta
from typing import Optional

# Settings are read at import time; pin them before any application import
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_ID"] = "price_test_monthly"
os.environ["TRIAL_DAYS"] = "7"

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from database import Base, get_db
from crud.entitlement import EntitlementRepository
from crud.user import UserRepository
from models.entitlement import ProviderCustomer, ProviderSubscription
from services.billing_provider import get_billing_provider
from services.errors import ProviderUnavailable
from utils.time_utils import utcnow

WEBHOOK_SECRET = "whsec_test_secret"


class FakeBillingProvider:
    """In-process stand-in for StripeBillingProvider holding customers and subscriptions."""

    def __init__(self):
        self.customers: dict = {}
        self.subscriptions: dict = {}
        self.checkout_sessions: list = []
        self.portal_sessions: list = []
        self.fail = False
        self.calls: list = []

    def add_customer(self, customer_id: str, email: str, deleted: bool = False) -> ProviderCustomer:
        customer = ProviderCustomer(id=customer_id, email=email, deleted=deleted)
        self.customers[customer_id] = customer
        return customer

    def add_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        status: str,
        current_period_end: Optional[datetime] = None,
        trial_end: Optional[datetime] = None,
        product_id: str = "prod_test",
    ) -> ProviderSubscription:
        subscription = ProviderSubscription(
            id=subscription_id,
            customer_id=customer_id,
            status=status,
            current_period_end=current_period_end,
            trial_end=trial_end,
            product_id=product_id,
        )
        self.subscriptions[subscription_id] = subscription
        return subscription

    def set_status(self, subscription_id: str, status: str) -> None:
        self.subscriptions[subscription_id] = self.subscriptions[subscription_id].model_copy(update={"status": status})

    def _call(self, operation: str) -> None:
        self.calls.append(operation)
        if self.fail:
            raise ProviderUnavailable(f"Stripe {operation} timed out")

    async def find_customer_by_email(self, email: str) -> Optional[ProviderCustomer]:
        self._call("customer lookup")
        for customer in self.customers.values():
            if not customer.deleted and customer.email and customer.email.lower() == email.lower():
                return customer
        return None

    async def retrieve_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        self._call("customer retrieve")
        return self.customers.get(customer_id)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        self._call("subscription retrieve")
        if subscription_id not in self.subscriptions:
            raise ProviderUnavailable(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def find_subscription(self, customer_id: str, status: str) -> Optional[ProviderSubscription]:
        self._call("subscription lookup")
        for subscription in self.subscriptions.values():
            if subscription.customer_id == customer_id and subscription.status == status:
                return subscription
        return None

    async def has_any_subscription(self, customer_id: str) -> bool:
        self._call("subscription history")
        return any(s.customer_id == customer_id for s in self.subscriptions.values())

    async def create_checkout_session(self, **params) -> str:
        self._call("checkout session")
        self.checkout_sessions.append(params)
        return f"https://checkout.stripe.test/c/{len(self.checkout_sessions)}"

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._call("billing portal session")
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/p/{customer_id}"


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
async def test_engine(tmp_path):
    """
    Fixture that provides an isolated SQLite database file for each test.
    Tables are created before the test and the engine disposed after it.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def create_account(test_db):
    """Factory creating a user plus entitlement record whose trial started at `now`."""

    async def _create(email: str = "owner@example.com", now: Optional[datetime] = None):
        user = await UserRepository(test_db).create_user({
            "email": email,
            "hashed_password": "not-a-real-hash",
        })
        record = await EntitlementRepository(test_db).create(user.id, user.email, now=now or utcnow())
        await test_db.commit()
        return user, record

    return _create


@pytest.fixture
async def client(session_factory, provider):
    """Async HTTP client bound to the app with the test database and fake provider."""
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_provider] = lambda: provider

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()


def days_ago(days: float) -> datetime:
    return utcnow() - timedelta(days=days)
