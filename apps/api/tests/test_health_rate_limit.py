import pytest
import redis.asyncio as redis

from config import settings
from main import app
from routers import rate_limit


@pytest.mark.asyncio
async def test_ready_requires_stripe_secrets(api_client, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_x")

    response = await api_client.get("/health/ready")

    assert response.status_code == 503
    assert response.json() == {"ready": False, "missing": ["STRIPE_SECRET_KEY"]}

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_x")
    assert (await api_client.get("/health/ready")).json() == {"ready": True}


@pytest.mark.asyncio
async def test_session_quota_counts_locally_without_redis(api_client, monkeypatch):
    async def _redis_down(key, window_seconds):
        raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(rate_limit, "_hit_redis_window", _redis_down)
    app.state.disable_rate_limits = False

    statuses = []
    for _ in range(11):
        response = await api_client.post("/auth/session", json={})
        statuses.append(response.status_code)

    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429
    assert response.json()["error"]["type"] == "rate_limit_exceeded"
    assert int(response.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_quota_follows_account_token(api_client):
    session = (await api_client.post("/auth/session", json={})).json()
    account_id = session["account"]["account_id"]

    class _Request:
        headers = {"authorization": f"Bearer {session['session_token']}"}
        client = None

    class _Anonymous:
        headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1"}
        client = None

    assert rate_limit.quota_subject(_Request()) == f"account:{account_id}"
    assert rate_limit.quota_subject(_Anonymous()) == "ip:203.0.113.9"
