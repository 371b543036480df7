"""Webhook reconciler: applies Stripe events to the ledger and subscriptions exactly once."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from models.account import Account
from models.processed_webhook_event import ProcessedWebhookEvent
from services.account_store import AccountStore
from services.credits import CreditLedger
from services.errors import InvalidPlan, WebhookSignatureInvalid
from services.payment_provider import StripeGateway
from services.plan_catalog import FREE_PLAN_ID, get_plan
from services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

RENEWAL_BILLING_REASON = "subscription_cycle"

Outcome = Tuple[str, Optional[str]]


@dataclass(frozen=True)
class WebhookResult:
    status: str  # applied, ignored, rejected
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    account_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "account_id": self.account_id,
            "reason": self.reason,
        }


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = dict(_as_dict(obj.get("metadata")))
    # Invoices carry the subscription's metadata one level down.
    nested = _as_dict(_as_dict(obj.get("subscription_details")).get("metadata"))
    for key, value in nested.items():
        metadata.setdefault(key, value)
    return metadata


def _reference_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value or "").strip()
    return text or None


def _customer_email(obj: Dict[str, Any]) -> Optional[str]:
    email = obj.get("customer_email") or _as_dict(obj.get("customer_details")).get("email")
    text = str(email or "").strip().lower()
    return text or None


def _subscription_id(obj: Dict[str, Any]) -> Optional[str]:
    if obj.get("object") == "subscription":
        return _reference_id(obj.get("id"))
    return _reference_id(obj.get("subscription"))


def _seconds_to_ms(value: Any) -> Optional[int]:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return seconds * 1000 if seconds > 0 else None


def _subscription_period_end_ms(obj: Dict[str, Any]) -> Optional[int]:
    period_end = _seconds_to_ms(obj.get("current_period_end"))
    if period_end:
        return period_end
    items = _as_dict(obj.get("items")).get("data") or []
    for item in items:
        period_end = _seconds_to_ms(_as_dict(item).get("current_period_end"))
        if period_end:
            return period_end
    return None


def _invoice_period_end_ms(obj: Dict[str, Any]) -> Optional[int]:
    lines = _as_dict(obj.get("lines")).get("data") or []
    for line in lines:
        period_end = _seconds_to_ms(_as_dict(_as_dict(line).get("period")).get("end"))
        if period_end:
            return period_end
    return None


class WebhookReconciler:
    """Applies verified payment-provider events.

    Each event is handled inside the target account's critical section: the
    processed-event check, the state change and the processed-event insert
    commit together, and the event id primary key turns a cross-process race
    into an ``ignored`` duplicate.
    """

    def __init__(
        self,
        store: AccountStore,
        ledger: CreditLedger,
        subscriptions: SubscriptionService,
        gateway: StripeGateway,
    ):
        self.store = store
        self.db = store.db
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.gateway = gateway
        self._handlers: Dict[str, Callable[[Account, Dict[str, Any], int], Awaitable[Outcome]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_paid,
            INVOICE_PAYMENT_FAILED: self._on_invoice_failed,
        }

    async def apply(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        try:
            event = self.gateway.verify_and_parse(payload, signature)
        except WebhookSignatureInvalid as exc:
            logger.warning("Rejected webhook: %s", exc)
            return WebhookResult(status="rejected", reason=str(exc))
        return await self.apply_event(event)

    async def apply_event(self, event: Dict[str, Any]) -> WebhookResult:
        event_id = str(event.get("id") or "").strip()
        event_type = str(event.get("type") or "").strip()
        if not event_id or not event_type:
            logger.warning("Rejected webhook without id or type")
            return WebhookResult(status="rejected", reason="missing_id_or_type")

        if await self._already_processed(event_id):
            return self._duplicate(event_id, event_type)

        handler = self._handlers.get(event_type)
        if handler is None:
            return await self._record_ignored(event_id, event_type, None, "unhandled_event_type")

        obj = _as_dict(_as_dict(event.get("data")).get("object"))
        account_id = await self._resolve_account(obj)
        if account_id is None:
            logger.warning("Webhook %s (%s): no matching account", event_id, event_type)
            return await self._record_ignored(event_id, event_type, None, "account_not_found")

        if event_type == CHECKOUT_COMPLETED:
            obj = await self._with_plan_metadata(obj)
        created_ms = _seconds_to_ms(event.get("created")) or 0

        async def _apply(account: Account) -> Optional[Outcome]:
            if await self._already_processed(event_id):
                return None
            outcome, detail = await handler(account, obj, created_ms)
            self.db.add(
                ProcessedWebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    account_id=account.id,
                    outcome=outcome,
                    detail=detail,
                )
            )
            return outcome, detail

        try:
            applied = await self.store.run_serialized(account_id, _apply)
        except IntegrityError:
            if not await self._already_processed(event_id):
                raise
            # Another worker recorded the same event id first.
            return self._duplicate(event_id, event_type)
        if applied is None:
            return self._duplicate(event_id, event_type)

        outcome, detail = applied
        logger.info(
            "Webhook %s (%s) %s for account %s%s",
            event_id,
            event_type,
            outcome,
            account_id,
            f": {detail}" if detail else "",
        )
        return WebhookResult(
            status=outcome,
            event_id=event_id,
            event_type=event_type,
            account_id=account_id,
            reason=detail,
        )

    async def _already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    def _duplicate(self, event_id: str, event_type: str) -> WebhookResult:
        logger.info("Webhook %s (%s) already processed; ignoring", event_id, event_type)
        return WebhookResult(status="ignored", event_id=event_id, event_type=event_type, reason="duplicate")

    async def _record_ignored(
        self,
        event_id: str,
        event_type: str,
        account_id: Optional[str],
        reason: str,
    ) -> WebhookResult:
        self.db.add(
            ProcessedWebhookEvent(
                event_id=event_id,
                event_type=event_type,
                account_id=account_id,
                outcome="ignored",
                detail=reason,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return self._duplicate(event_id, event_type)
        logger.info("Webhook %s (%s) ignored: %s", event_id, event_type, reason)
        return WebhookResult(status="ignored", event_id=event_id, event_type=event_type, account_id=account_id, reason=reason)

    async def _resolve_account(self, obj: Dict[str, Any]) -> Optional[str]:
        """Metadata account id, client reference, customer id, email, then provider lookups."""
        metadata = _metadata(obj)
        for candidate in (metadata.get("accountId"), obj.get("client_reference_id")):
            if candidate:
                account = await self.store.get(str(candidate))
                if account is not None:
                    return account.id

        customer_id = _reference_id(obj.get("customer"))
        account = await self.store.find_by_customer_id(customer_id)
        if account is not None:
            return account.id

        account = await self.store.find_by_email(_customer_email(obj))
        if account is not None:
            return account.id

        subscription_id = _subscription_id(obj)
        if subscription_id:
            provider_metadata = await asyncio.to_thread(self.gateway.lookup_subscription_metadata, subscription_id)
            if provider_metadata.get("accountId"):
                account = await self.store.get(provider_metadata["accountId"])
                if account is not None:
                    return account.id

        if customer_id:
            email = await asyncio.to_thread(self.gateway.lookup_customer_email, customer_id)
            account = await self.store.find_by_email(email)
            if account is not None:
                return account.id
        return None

    async def _with_plan_metadata(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Fill a checkout's missing planId from the provider's subscription metadata."""
        metadata = _metadata(obj)
        subscription_id = _subscription_id(obj)
        if metadata.get("planId") or not subscription_id:
            return obj
        provider_metadata = await asyncio.to_thread(self.gateway.lookup_subscription_metadata, subscription_id)
        if not provider_metadata.get("planId"):
            return obj
        logger.info("Checkout %s: planId taken from subscription %s metadata", obj.get("id"), subscription_id)
        return {**obj, "metadata": {**provider_metadata, **metadata}}

    def _other_subscription(self, subscription, obj: Dict[str, Any]) -> bool:
        """True when the event is about a subscription the account has since replaced."""
        event_subscription = _subscription_id(obj)
        current = subscription.stripe_subscription_id
        return bool(event_subscription and current and event_subscription != current)

    def _link_provider_ids(self, account: Account, obj: Dict[str, Any]) -> None:
        customer_id = _reference_id(obj.get("customer"))
        if customer_id and account.stripe_customer_id != customer_id:
            account.stripe_customer_id = customer_id
        email = _customer_email(obj)
        if email and not account.email:
            account.email = email

    async def _claim_event_order(self, account: Account, created_ms: int) -> bool:
        """Last-write-wins by event timestamp. False when a newer event was already applied."""
        subscription = await self.subscriptions.subscription_for(account)
        last = subscription.last_provider_event_ms
        if last is not None and created_ms and created_ms < int(last):
            return False
        if created_ms:
            subscription.last_provider_event_ms = created_ms
        return True

    async def _on_checkout_completed(self, account: Account, obj: Dict[str, Any], created_ms: int) -> Outcome:
        metadata = _metadata(obj)
        try:
            plan = get_plan(metadata.get("planId"))
        except InvalidPlan:
            return "ignored", f"unknown plan {metadata.get('planId')!r}"
        if plan.id == FREE_PLAN_ID:
            return "ignored", "checkout for free plan"

        declared = metadata.get("credits")
        if declared is not None and str(declared) != str(plan.monthly_credits):
            logger.warning(
                "Checkout %s declares %s credits for plan %s; granting catalog amount %s",
                obj.get("id"),
                declared,
                plan.id,
                plan.monthly_credits,
            )

        self._link_provider_ids(account, obj)
        subscription = await self.subscriptions.subscription_for(account)
        subscription_id = _subscription_id(obj)
        if subscription_id:
            subscription.stripe_subscription_id = subscription_id
        if created_ms and created_ms > int(subscription.last_provider_event_ms or 0):
            subscription.last_provider_event_ms = created_ms

        result = await self.subscriptions.change_plan_locked(account, plan.id, paid=True)
        if result["change"] == "unchanged":
            # A paid checkout for the current plan still buys that plan's credits.
            self.ledger.grant_in_transaction(
                account,
                plan.monthly_credits,
                f"Subscription payment for {plan.name}",
                entry_type="purchase",
                billing_provider="stripe",
                billing_reference=_reference_id(obj.get("id")),
            )
        return "applied", f"{result['change']} to {plan.id}"

    async def _on_subscription_updated(self, account: Account, obj: Dict[str, Any], created_ms: int) -> Outcome:
        subscription = await self.subscriptions.subscription_for(account)
        if self._other_subscription(subscription, obj):
            return "ignored", "other_subscription"
        if not await self._claim_event_order(account, created_ms):
            return "ignored", "stale"
        self._link_provider_ids(account, obj)
        subscription_id = _subscription_id(obj)
        if subscription_id:
            subscription.stripe_subscription_id = subscription_id
        cancel_flag = obj.get("cancel_at_period_end")
        await self.subscriptions.sync_provider_status_locked(
            account,
            provider_status=obj.get("status"),
            cancel_at_period_end=bool(cancel_flag) if cancel_flag is not None else None,
            period_end_ms=_subscription_period_end_ms(obj),
        )
        return "applied", f"status {obj.get('status') or 'unchanged'}"

    async def _on_subscription_deleted(self, account: Account, obj: Dict[str, Any], created_ms: int) -> Outcome:
        if self._other_subscription(await self.subscriptions.subscription_for(account), obj):
            return "ignored", "other_subscription"
        if not await self._claim_event_order(account, created_ms):
            return "ignored", "stale"
        await self.subscriptions.mark_cancelled_locked(account)
        return "applied", "cancelled"

    async def _on_invoice_paid(self, account: Account, obj: Dict[str, Any], created_ms: int) -> Outcome:
        billing_reason = obj.get("billing_reason")
        if billing_reason != RENEWAL_BILLING_REASON:
            return "ignored", f"billing_reason {billing_reason or 'missing'}"
        granted = await self.subscriptions.apply_renewal_locked(
            account,
            period_end_ms=_invoice_period_end_ms(obj),
            billing_reference=_reference_id(obj.get("id")),
        )
        return "applied", f"renewal granted {granted}"

    async def _on_invoice_failed(self, account: Account, obj: Dict[str, Any], created_ms: int) -> Outcome:
        if self._other_subscription(await self.subscriptions.subscription_for(account), obj):
            return "ignored", "other_subscription"
        if not await self._claim_event_order(account, created_ms):
            return "ignored", "stale"
        await self.subscriptions.mark_past_due_locked(account)
        return "applied", "past_due"
