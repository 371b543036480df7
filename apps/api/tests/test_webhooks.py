import asyncio
import time

import pytest
from sqlalchemy.future import select

from models.processed_webhook_event import ProcessedWebhookEvent
from services.account_store import AccountStore
from services.credits import CreditLedger
from services.payment_provider import StripeGateway
from services.subscriptions import SubscriptionService
from services.webhooks import WebhookReconciler


class _SubscriptionMetadataGateway(StripeGateway):
    """Gateway whose subscription lookup answers from a fixed table."""

    def __init__(self, metadata_by_subscription):
        super().__init__(api_key="", webhook_secret="whsec_test_secret")
        self.metadata_by_subscription = metadata_by_subscription
        self.lookups = []

    def lookup_subscription_metadata(self, subscription_id):
        self.lookups.append(subscription_id)
        return dict(self.metadata_by_subscription.get(subscription_id, {}))


def _reconciler(session, locks, gateway):
    store = AccountStore(session, locks)
    ledger = CreditLedger(store)
    return WebhookReconciler(store, ledger, SubscriptionService(store, ledger), gateway)


def _checkout(account_id=None, plan_id="creator", customer="cus_123", **extra):
    obj = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": customer,
        "subscription": "sub_123",
        "metadata": {"planId": plan_id, "credits": "1000"},
    }
    if account_id:
        obj["metadata"]["accountId"] = account_id
    obj.update(extra)
    return obj


async def _processed_count(services):
    result = await services.db.execute(select(ProcessedWebhookEvent.event_id))
    return len(result.all())


@pytest.mark.asyncio
async def test_checkout_completed_upgrades_and_links_customer(services, event_factory, sign_webhook):
    account = await services.ledger.ensure_account(email="buyer@example.com")
    payload, signature = sign_webhook(event_factory("evt_checkout", "checkout.session.completed", _checkout(account.id)))

    result = await services.reconciler.apply(payload, signature)

    assert result.status == "applied"
    assert result.account_id == account.id
    state = await services.subscriptions.get(account.id)
    assert state["credits"] == 1010
    assert state["current_plan"] == "creator"
    assert state["status"] == "active"
    refreshed = await services.ledger.get_account(account.id)
    assert refreshed.stripe_customer_id == "cus_123"


@pytest.mark.asyncio
async def test_replayed_event_is_applied_once(services, event_factory, sign_webhook):
    account = await services.ledger.ensure_account()
    payload, signature = sign_webhook(event_factory("evt_replay", "checkout.session.completed", _checkout(account.id)))

    first = await services.reconciler.apply(payload, signature)
    second = await services.reconciler.apply(payload, signature)

    assert first.status == "applied"
    assert second.status == "ignored"
    assert second.reason == "duplicate"
    assert await services.ledger.get_balance(account.id) == 1010
    assert len((await services.subscriptions.get(account.id))["billing_history"]) == 1
    assert await _processed_count(services) == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(services, event_factory, sign_webhook):
    account = await services.ledger.ensure_account()
    payload, _ = sign_webhook(event_factory("evt_forged", "checkout.session.completed", _checkout(account.id)))
    _, forged_signature = sign_webhook({"id": "other"}, secret="whsec_wrong")

    result = await services.reconciler.apply(payload, forged_signature)
    missing = await services.reconciler.apply(payload, None)

    assert result.status == "rejected"
    assert missing.status == "rejected"
    assert await services.ledger.get_balance(account.id) == 10
    assert await _processed_count(services) == 0


@pytest.mark.asyncio
async def test_expired_signature_timestamp_is_rejected(services, event_factory, sign_webhook):
    account = await services.ledger.ensure_account()
    event = event_factory("evt_old", "checkout.session.completed", _checkout(account.id))
    payload, signature = sign_webhook(event, timestamp=time.time() - 3600)

    result = await services.reconciler.apply(payload, signature)

    assert result.status == "rejected"
    assert await services.ledger.get_balance(account.id) == 10


@pytest.mark.asyncio
async def test_checkout_resolves_account_by_customer_email(services, event_factory):
    account = await services.ledger.ensure_account(email="buyer@example.com")
    obj = _checkout(plan_id="agency", customer="cus_email", customer_details={"email": "Buyer@Example.com"})

    result = await services.reconciler.apply_event(event_factory("evt_email", "checkout.session.completed", obj))

    assert result.status == "applied"
    assert result.account_id == account.id
    assert await services.ledger.get_balance(account.id) == 5010


@pytest.mark.asyncio
async def test_checkout_grants_catalog_amount_when_metadata_disagrees(services, event_factory):
    account = await services.ledger.ensure_account()
    obj = _checkout(account.id)
    obj["metadata"]["credits"] = "999999"

    await services.reconciler.apply_event(event_factory("evt_mismatch", "checkout.session.completed", obj))

    assert await services.ledger.get_balance(account.id) == 1010


@pytest.mark.asyncio
async def test_payment_failed_marks_past_due_and_keeps_balance(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    invoice = {"id": "in_failed", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"}

    result = await services.reconciler.apply_event(event_factory("evt_failed", "invoice.payment_failed", invoice))

    assert result.status == "applied"
    state = await services.subscriptions.get(account.id)
    assert state["status"] == "past_due"
    assert state["credits"] == 1010


@pytest.mark.asyncio
async def test_renewal_invoice_grants_current_plan(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    period_end = int(time.time()) + 31 * 24 * 60 * 60
    invoice = {
        "id": "in_cycle",
        "object": "invoice",
        "customer": "cus_123",
        "billing_reason": "subscription_cycle",
        "lines": {"data": [{"period": {"end": period_end}}]},
    }

    result = await services.reconciler.apply_event(event_factory("evt_cycle", "invoice.payment_succeeded", invoice))

    assert result.status == "applied"
    state = await services.subscriptions.get(account.id)
    assert state["credits"] == 2010
    assert state["current_period_end"] == period_end * 1000


@pytest.mark.asyncio
async def test_non_cycle_invoice_is_recorded_and_ignored(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    invoice = {"id": "in_first", "object": "invoice", "customer": "cus_123", "billing_reason": "subscription_create"}

    result = await services.reconciler.apply_event(event_factory("evt_create", "invoice.payment_succeeded", invoice))

    assert result.status == "ignored"
    assert await services.ledger.get_balance(account.id) == 1010
    assert await _processed_count(services) == 2


@pytest.mark.asyncio
async def test_subscription_deleted_reverts_to_free(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    subscription = {"id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "canceled"}

    await services.reconciler.apply_event(event_factory("evt_deleted", "customer.subscription.deleted", subscription))

    state = await services.subscriptions.get(account.id)
    assert state["status"] == "cancelled"
    assert state["current_plan"] == "free"
    assert state["credits"] == 1010


@pytest.mark.asyncio
async def test_stale_subscription_update_is_ignored(services, event_factory):
    account = await services.ledger.ensure_account()
    now = int(time.time())
    await services.reconciler.apply_event(
        event_factory("evt_co", "checkout.session.completed", _checkout(account.id), created=now - 100)
    )
    newer = {"id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "past_due"}
    older = {"id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "active", "cancel_at_period_end": True}

    applied = await services.reconciler.apply_event(
        event_factory("evt_newer", "customer.subscription.updated", newer, created=now)
    )
    stale = await services.reconciler.apply_event(
        event_factory("evt_older", "customer.subscription.updated", older, created=now - 50)
    )

    assert applied.status == "applied"
    assert stale.status == "ignored"
    assert stale.reason == "stale"
    state = await services.subscriptions.get(account.id)
    assert state["status"] == "past_due"
    assert state["cancel_at_period_end"] is False


@pytest.mark.asyncio
async def test_subscription_update_sets_cancel_flag_and_period(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    period_end = int(time.time()) + 10 * 24 * 60 * 60
    updated = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": True,
        "items": {"data": [{"current_period_end": period_end}]},
    }

    await services.reconciler.apply_event(event_factory("evt_upd", "customer.subscription.updated", updated))

    state = await services.subscriptions.get(account.id)
    assert state["cancel_at_period_end"] is True
    assert state["current_period_end"] == period_end * 1000
    assert state["credits"] == 1010


@pytest.mark.asyncio
async def test_event_for_unknown_account_is_recorded_and_ignored(services, event_factory):
    obj = _checkout(customer="cus_unknown")

    first = await services.reconciler.apply_event(event_factory("evt_orphan", "checkout.session.completed", obj))
    second = await services.reconciler.apply_event(event_factory("evt_orphan", "checkout.session.completed", obj))

    assert first.status == "ignored"
    assert first.reason == "account_not_found"
    assert second.reason == "duplicate"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(services, event_factory):
    result = await services.reconciler.apply_event(event_factory("evt_misc", "customer.created", {"id": "cus_1"}))
    assert result.status == "ignored"
    assert result.reason == "unhandled_event_type"


@pytest.mark.asyncio
async def test_checkout_without_plan_metadata_uses_subscription_metadata(services, locks, event_factory):
    account = await services.ledger.ensure_account()
    gateway = _SubscriptionMetadataGateway({"sub_lookup": {"planId": "agency", "accountId": account.id}})
    reconciler = _reconciler(services.db, locks, gateway)
    obj = _checkout(account.id, subscription="sub_lookup")
    obj["metadata"] = {"accountId": account.id}

    result = await reconciler.apply_event(event_factory("evt_no_plan", "checkout.session.completed", obj))

    assert result.status == "applied"
    assert gateway.lookups == ["sub_lookup"]
    state = await services.subscriptions.get(account.id)
    assert state["current_plan"] == "agency"
    assert state["credits"] == 5010


@pytest.mark.asyncio
async def test_checkout_without_any_plan_metadata_is_ignored(services, locks, event_factory):
    account = await services.ledger.ensure_account()
    reconciler = _reconciler(services.db, locks, _SubscriptionMetadataGateway({}))
    obj = _checkout(account.id)
    obj["metadata"] = {"accountId": account.id}

    result = await reconciler.apply_event(event_factory("evt_no_plan_anywhere", "checkout.session.completed", obj))

    assert result.status == "ignored"
    assert await services.ledger.get_balance(account.id) == 10


@pytest.mark.asyncio
async def test_events_for_replaced_subscription_are_ignored(services, event_factory):
    account = await services.ledger.ensure_account()
    await services.reconciler.apply_event(event_factory("evt_co", "checkout.session.completed", _checkout(account.id)))
    await services.reconciler.apply_event(
        event_factory(
            "evt_co_agency",
            "checkout.session.completed",
            _checkout(account.id, plan_id="agency", subscription="sub_agency"),
        )
    )
    old_subscription = {"id": "sub_123", "object": "subscription", "customer": "cus_123", "status": "canceled"}
    old_invoice = {"id": "in_old", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"}

    deleted = await services.reconciler.apply_event(
        event_factory("evt_old_deleted", "customer.subscription.deleted", old_subscription)
    )
    failed = await services.reconciler.apply_event(event_factory("evt_old_failed", "invoice.payment_failed", old_invoice))
    updated = await services.reconciler.apply_event(
        event_factory("evt_old_updated", "customer.subscription.updated", old_subscription)
    )

    assert [deleted.reason, failed.reason, updated.reason] == ["other_subscription"] * 3
    state = await services.subscriptions.get(account.id)
    assert state["current_plan"] == "agency"
    assert state["status"] == "active"
    assert state["credits"] == 6010


@pytest.mark.asyncio
async def test_concurrent_redelivery_is_applied_once(services, session_maker, locks, gateway, event_factory):
    account = await services.ledger.ensure_account()
    event = event_factory("evt_parallel", "checkout.session.completed", _checkout(account.id))

    async def _deliver():
        async with session_maker() as session:
            return await _reconciler(session, locks, gateway).apply_event(event)

    results = await asyncio.gather(_deliver(), _deliver())

    assert sorted(result.status for result in results) == ["applied", "ignored"]
    assert await services.ledger.get_balance(account.id) == 1010
    assert await _processed_count(services) == 1
    assert len((await services.subscriptions.get(account.id))["billing_history"]) == 1
