from unittest.mock import patch

import pytest

from config import settings
from services.session_token import AccountSnapshot, sign_snapshot


async def _session(api_client, email=None):
    response = await api_client.post("/auth/session", json={"email": email})
    assert response.status_code == 200
    payload = response.json()
    return {"Authorization": f"Bearer {payload['session_token']}"}, payload


@pytest.mark.asyncio
async def test_session_deduct_refund_round_trip(api_client):
    headers, session = await _session(api_client, "flow@example.com")
    assert session["account"]["credits"] == 10
    assert session["account"]["plan"] == "free"

    deduct = await api_client.post("/billing/deduct", json={"operation_type": "thumbnail_standard"}, headers=headers)
    assert deduct.status_code == 200
    assert deduct.json()["balance"] == 0
    operation_id = deduct.json()["operation_id"]

    again = await api_client.post("/billing/deduct", json={"operation_type": "thumbnail_standard"}, headers=headers)
    assert again.status_code == 402
    error = again.json()["error"]
    assert error["type"] == "insufficient_credits"
    assert error["balance"] == 0
    assert error["required"] == 10

    refund = await api_client.post("/billing/refund", json={"operation_id": operation_id}, headers=headers)
    assert refund.status_code == 200
    assert refund.json()["balance"] == 10
    assert refund.json()["total_generations"] == 0

    confirm = await api_client.post("/billing/confirm", json={"operation_id": operation_id}, headers=headers)
    assert confirm.status_code == 400
    assert confirm.json()["error"]["type"] == "invalid_operation"


@pytest.mark.asyncio
async def test_refresh_reissues_token_with_ledger_snapshot(api_client):
    headers, _ = await _session(api_client)
    await api_client.post("/billing/deduct", json={"operation_type": "audit"}, headers=headers)

    refreshed = await api_client.post("/auth/refresh", headers=headers)
    assert refreshed.status_code == 200
    assert refreshed.json()["account"]["credits"] == 5
    assert refreshed.json()["account"]["total_generations"] == 1

    me = await api_client.get("/auth/me", headers=headers)
    assert me.json()["credits"] == 5


@pytest.mark.asyncio
async def test_token_errors_return_401(api_client):
    missing = await api_client.get("/billing/credits")
    assert missing.status_code == 401
    assert missing.json()["type"] == "error"

    expired = sign_snapshot(AccountSnapshot("acct-x", 10, "free", 0, issued_at=1, expires_at=2)).token
    response = await api_client.get("/billing/credits", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert response.json()["error"]["type"] == "token_expired"

    tampered = await api_client.get("/billing/credits", headers={"Authorization": "Bearer not.a.token"})
    assert tampered.status_code == 401


@pytest.mark.asyncio
async def test_unknown_operation_type_is_rejected(api_client):
    headers, _ = await _session(api_client)
    response = await api_client.post("/billing/deduct", json={"operation_type": "hologram"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_operation"


@pytest.mark.asyncio
async def test_costs_endpoint_lists_table_and_plans(api_client):
    response = await api_client.get("/billing/costs")
    payload = response.json()
    assert payload["costs"]["thumbnail_ultra"] == 25
    assert [plan["id"] for plan in payload["plans"]] == ["free", "creator", "agency"]


@pytest.mark.asyncio
async def test_generate_without_backend_refunds(api_client):
    headers, _ = await _session(api_client)

    response = await api_client.post("/generate/thumbnail", json={"quality": "standard"}, headers=headers)

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["type"] == "external_action_failed"
    assert error["operation_id"].startswith("op_")
    assert error["balance"] == 10
    credits = await api_client.get("/billing/credits", headers=headers)
    assert credits.json()["balance"] == 10
    assert credits.json()["pending_operations"] == []


@pytest.mark.asyncio
async def test_client_cannot_upgrade_without_checkout(api_client):
    headers, _ = await _session(api_client)

    response = await api_client.post("/subscription/change-plan", json={"plan_id": "agency"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_plan"

    subscription = await api_client.get("/subscription", headers=headers)
    assert subscription.json()["current_plan"] == "free"
    assert subscription.json()["credits"] == 10


@pytest.mark.asyncio
async def test_webhook_upgrade_then_cancel_and_reactivate(api_client, event_factory, sign_webhook):
    headers, session = await _session(api_client)
    account_id = session["account"]["account_id"]
    event = event_factory(
        "evt_http_checkout",
        "checkout.session.completed",
        {
            "id": "cs_http",
            "object": "checkout.session",
            "customer": "cus_http",
            "client_reference_id": account_id,
            "metadata": {"planId": "creator", "credits": "1000"},
        },
    )
    payload, signature = sign_webhook(event)

    applied = await api_client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": signature})
    replay = await api_client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert applied.status_code == 200
    assert applied.json()["status"] == "applied"
    assert replay.json()["status"] == "ignored"

    cancel = await api_client.post("/subscription/cancel", headers=headers)
    assert cancel.json()["cancel_at_period_end"] is True
    reactivate = await api_client.post("/subscription/reactivate", headers=headers)
    assert reactivate.json()["cancel_at_period_end"] is False
    assert reactivate.json()["credits"] == 1010

    downgrade = await api_client.post("/subscription/change-plan", json={"plan_id": "free"}, headers=headers)
    assert downgrade.status_code == 200
    assert downgrade.json()["change"] == "downgrade"
    assert downgrade.json()["subscription"]["credits"] == 1010


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_returns_400(api_client, event_factory, sign_webhook):
    payload, _ = sign_webhook(event_factory("evt_bad", "checkout.session.completed", {}))
    response = await api_client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=bad"})

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "webhook_signature_invalid"


@pytest.mark.asyncio
async def test_webhook_queue_mode_enqueues_verified_event(api_client, event_factory, sign_webhook, monkeypatch):
    monkeypatch.setattr(settings, "WEBHOOK_PROCESSING_MODE", "queue")
    payload, signature = sign_webhook(event_factory("evt_queued", "invoice.payment_failed", {"customer": "cus_q"}))

    with patch("routers.billing.enqueue_webhook_event") as enqueue:
        enqueue.return_value.id = "webhook:evt_queued"
        response = await api_client.post("/billing/webhook", content=payload, headers={"Stripe-Signature": signature})

    assert response.status_code == 200
    assert response.json()["status"] == "queued"
    enqueue.assert_called_once()
    assert enqueue.call_args.args[0]["id"] == "evt_queued"


@pytest.mark.asyncio
async def test_checkout_creates_stripe_session(api_client, gateway):
    headers, session = await _session(api_client, "pay@example.com")

    with patch.object(gateway, "create_checkout_session", return_value={"id": "cs_1", "url": "https://stripe.test/cs_1"}) as create:
        response = await api_client.post("/billing/checkout", json={"plan_id": "creator"}, headers=headers)

    assert response.status_code == 200
    assert response.json()["checkout_url"] == "https://stripe.test/cs_1"
    kwargs = create.call_args.kwargs
    assert kwargs["account_id"] == session["account"]["account_id"]
    assert kwargs["plan"].id == "creator"
    assert kwargs["email"] == "pay@example.com"


@pytest.mark.asyncio
async def test_health_live(api_client):
    response = await api_client.get("/health/live")
    assert response.json() == {"alive": True}


@pytest.mark.asyncio
async def test_checkout_rejects_foreign_redirect_urls(api_client, gateway):
    headers, _ = await _session(api_client)

    with patch.object(gateway, "create_checkout_session") as create:
        response = await api_client.post(
            "/billing/checkout",
            json={"plan_id": "creator", "success_url": "https://attacker.example/landing"},
            headers=headers,
        )

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_operation"
    create.assert_not_called()


@pytest.mark.asyncio
async def test_checkout_accepts_redirect_to_frontend_origin(api_client, gateway):
    headers, _ = await _session(api_client)
    success_url = f"{settings.CORS_ORIGINS[0]}/billing/done"

    with patch.object(gateway, "create_checkout_session", return_value={"id": "cs_2", "url": "https://stripe.test/cs_2"}) as create:
        response = await api_client.post(
            "/billing/checkout",
            json={"plan_id": "agency", "success_url": success_url},
            headers=headers,
        )

    assert response.status_code == 200
    assert create.call_args.kwargs["success_url"] == success_url
    assert create.call_args.kwargs["cancel_url"] is None
