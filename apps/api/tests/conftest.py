import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from routers.auth_scope import get_payment_gateway
from services.account_store import AccountLockRegistry, AccountStore
from services.credits import CreditLedger
from services.payment_provider import StripeGateway
from services.subscriptions import SubscriptionService
from services.webhooks import WebhookReconciler


WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "credit_ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest.fixture
def locks():
    return AccountLockRegistry()


@pytest.fixture
def gateway():
    return StripeGateway(api_key="", webhook_secret=WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def services(session_maker, locks, gateway):
    """Ledger, subscriptions and reconciler sharing one session, as a request would."""
    async with session_maker() as session:
        store = AccountStore(session, locks)
        ledger = CreditLedger(store)
        subscriptions = SubscriptionService(store, ledger)
        yield SimpleNamespace(
            db=session,
            store=store,
            ledger=ledger,
            subscriptions=subscriptions,
            reconciler=WebhookReconciler(store, ledger, subscriptions, gateway),
        )


@pytest.fixture
def sign_webhook():
    """Build a body and Stripe-Signature header the way Stripe signs deliveries."""

    def _sign(event, secret=WEBHOOK_SECRET, timestamp=None):
        payload = json.dumps(event)
        ts = int(timestamp if timestamp is not None else time.time())
        digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
        return payload.encode("utf-8"), f"t={ts},v1={digest}"

    return _sign


def make_event(event_id, event_type, obj, created=None):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(created if created is not None else time.time()),
        "data": {"object": obj},
    }


@pytest.fixture
def event_factory():
    return make_event


@pytest_asyncio.fixture
async def api_client(session_maker, gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    previous_locks = getattr(app.state, "account_locks", None)
    app.state.account_locks = AccountLockRegistry()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
    app.state.account_locks = previous_locks
