"""Subscription state machine and its interaction with the credit ledger."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import delete
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.billing_history import BillingHistoryItem
from models.subscription import Subscription
from services.account_store import AccountStore, billing_period_ms, now_ms
from services.credits import CreditLedger
from services.errors import InvalidPlan, InvalidSubscriptionState
from services.plan_catalog import FREE_PLAN_ID, get_plan, is_downgrade, is_upgrade

logger = logging.getLogger(__name__)

STATUSES = ("trialing", "active", "past_due", "cancelled")

# Provider subscription status -> local status
PROVIDER_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete_expired": "cancelled",
}


def _status_for_plan(plan_id: str) -> str:
    return "trialing" if plan_id == FREE_PLAN_ID else "active"


class SubscriptionService:
    """Plan changes, cancellation and provider-driven status transitions.

    Client-facing methods (change_plan, cancel, reactivate) run in their own
    critical section. The ``*_locked`` methods take an account the caller has
    already locked and never commit, so the webhook reconciler can combine
    them with its idempotency record in one transaction.
    """

    def __init__(self, store: AccountStore, ledger: CreditLedger):
        self.store = store
        self.ledger = ledger
        self.db = store.db

    async def subscription_for(self, account: Account) -> Subscription:
        # Sessions do not autoflush; pending edits must reach the row before it is re-read.
        await self.db.flush()
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.account_id == account.id)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            created_ms = now_ms()
            subscription = Subscription(
                account_id=account.id,
                status=_status_for_plan(account.plan),
                plan=account.plan,
                started_at_ms=created_ms,
                current_period_end_ms=created_ms + billing_period_ms(),
                cancel_at_period_end=False,
            )
            self.db.add(subscription)
        return subscription

    async def _append_history(self, account: Account, *, amount: str, description: str, status: str = "paid") -> BillingHistoryItem:
        item = BillingHistoryItem(
            id=f"bill_{uuid.uuid4().hex[:16]}",
            account_id=account.id,
            billed_at_ms=now_ms(),
            amount=amount,
            description=description,
            status=status,
        )
        self.db.add(item)
        await self.db.flush()

        limit = max(int(settings.BILLING_HISTORY_LIMIT), 1)
        keep = await self.db.execute(
            select(BillingHistoryItem.pk)
            .where(BillingHistoryItem.account_id == account.id)
            .order_by(BillingHistoryItem.billed_at_ms.desc(), BillingHistoryItem.pk.desc())
            .limit(limit)
        )
        keep_ids = [row[0] for row in keep.all()]
        await self.db.execute(
            delete(BillingHistoryItem)
            .where(BillingHistoryItem.account_id == account.id, BillingHistoryItem.pk.not_in(keep_ids))
            .execution_options(synchronize_session=False)
        )
        return item

    async def change_plan_locked(self, account: Account, target_plan: str, *, paid: bool = False) -> Dict[str, Any]:
        """Switch plans inside the caller's critical section.

        Only an upgrade or a provider-confirmed payment (``paid``) starts a new
        billing period and sets the status. Downgrades and same-plan changes
        keep the provider-driven status and period, so a ``past_due`` account
        stays ``past_due`` until the provider reports a payment.
        """
        target = get_plan(target_plan)
        current_plan = account.plan
        subscription = await self.subscription_for(account)
        started = now_ms()
        upgrade = is_upgrade(current_plan, target.id)
        downgrade = is_downgrade(current_plan, target.id)

        subscription.plan = target.id
        account.plan = target.id
        if upgrade or paid:
            subscription.status = _status_for_plan(target.id)
            subscription.started_at_ms = started
            subscription.current_period_end_ms = started + billing_period_ms()
            subscription.cancel_at_period_end = False
        elif subscription.status != "cancelled" and started < int(subscription.current_period_end_ms):
            subscription.cancel_at_period_end = False

        granted = 0
        if upgrade:
            if target.monthly_credits > 0:
                self.ledger.grant_in_transaction(account, target.monthly_credits, f"Upgrade to {target.name}")
                granted = target.monthly_credits
            await self._append_history(account, amount=target.price, description=f"Upgrade to {target.name}")
        elif downgrade:
            # Balance untouched; the smaller grant applies from the next renewal.
            await self._append_history(account, amount=target.price, description=f"Downgrade to {target.name}")

        change = "upgrade" if upgrade else "downgrade" if downgrade else "unchanged"
        logger.info(
            "Plan change for account %s: %s -> %s (%s, granted %s)",
            account.id,
            current_plan,
            target.id,
            change,
            granted,
        )
        return {"change": change, "previous_plan": current_plan, "plan": target.id, "granted": granted}

    async def change_plan(self, account_id: str, target_plan: str, *, allow_upgrade: bool = True) -> Dict[str, Any]:
        """Apply a plan change. With allow_upgrade=False an upgrade raises InvalidPlan."""
        target = get_plan(target_plan)

        async def _change(account: Account) -> Dict[str, Any]:
            if not allow_upgrade and is_upgrade(account.plan, target.id):
                raise InvalidPlan(f"Upgrading to {target.name} requires checkout. Use POST /billing/checkout.")
            return await self.change_plan_locked(account, target.id)

        result = await self.store.run_serialized(account_id, _change)
        return {**result, "subscription": await self.get(account_id)}

    async def cancel(self, account_id: str) -> Dict[str, Any]:
        async def _cancel(account: Account) -> None:
            subscription = await self.subscription_for(account)
            if subscription.status == "cancelled":
                raise InvalidSubscriptionState("Subscription is already cancelled.")
            subscription.cancel_at_period_end = True

        await self.store.run_serialized(account_id, _cancel)
        logger.info("Account %s scheduled cancellation at period end", account_id)
        return await self.get(account_id)

    async def reactivate(self, account_id: str) -> Dict[str, Any]:
        async def _reactivate(account: Account) -> bool:
            subscription = await self.subscription_for(account)
            if subscription.status == "cancelled" or now_ms() >= int(subscription.current_period_end_ms):
                return False
            subscription.cancel_at_period_end = False
            return True

        reactivated = await self.store.run_serialized(account_id, _reactivate)
        if not reactivated:
            logger.info("Reactivation for account %s skipped: period already ended", account_id)
        return await self.get(account_id)

    async def mark_past_due_locked(self, account: Account) -> None:
        subscription = await self.subscription_for(account)
        subscription.status = "past_due"
        plan = get_plan(account.plan)
        await self._append_history(account, amount=plan.price, description=f"Payment failed for {plan.name}", status="failed")

    async def mark_cancelled_locked(self, account: Account) -> None:
        """Provider-confirmed cancellation: plan reverts to free, credits are preserved."""
        subscription = await self.subscription_for(account)
        subscription.status = "cancelled"
        subscription.cancel_at_period_end = False
        subscription.plan = FREE_PLAN_ID
        account.plan = FREE_PLAN_ID

    async def apply_renewal_locked(
        self,
        account: Account,
        *,
        period_end_ms: Optional[int] = None,
        billing_reference: Optional[str] = None,
    ) -> int:
        """Renewal payment: grant the current plan's monthly credits and extend the period."""
        plan = get_plan(account.plan)
        subscription = await self.subscription_for(account)
        granted = 0
        if plan.id != FREE_PLAN_ID and plan.monthly_credits > 0:
            self.ledger.grant_in_transaction(
                account,
                plan.monthly_credits,
                f"Monthly renewal for {plan.name}",
                billing_provider="stripe" if billing_reference else None,
                billing_reference=billing_reference,
            )
            granted = plan.monthly_credits
        subscription.status = _status_for_plan(plan.id)
        subscription.current_period_end_ms = int(period_end_ms or (now_ms() + billing_period_ms()))
        await self._append_history(account, amount=plan.price, description=f"Renewal of {plan.name}")
        return granted

    async def sync_provider_status_locked(
        self,
        account: Account,
        *,
        provider_status: Optional[str],
        cancel_at_period_end: Optional[bool] = None,
        period_end_ms: Optional[int] = None,
    ) -> None:
        subscription = await self.subscription_for(account)
        status = PROVIDER_STATUS_MAP.get(str(provider_status or "").strip().lower())
        if status == "cancelled":
            await self.mark_cancelled_locked(account)
        elif status:
            subscription.status = status
        if cancel_at_period_end is not None and subscription.status != "cancelled":
            subscription.cancel_at_period_end = bool(cancel_at_period_end)
        if period_end_ms:
            subscription.current_period_end_ms = int(period_end_ms)

    async def mark_past_due(self, account_id: str) -> Dict[str, Any]:
        async def _mark(account: Account) -> None:
            await self.mark_past_due_locked(account)

        await self.store.run_serialized(account_id, _mark)
        return await self.get(account_id)

    async def mark_cancelled(self, account_id: str) -> Dict[str, Any]:
        async def _mark(account: Account) -> None:
            await self.mark_cancelled_locked(account)

        await self.store.run_serialized(account_id, _mark)
        return await self.get(account_id)

    async def apply_renewal(
        self,
        account_id: str,
        *,
        period_end_ms: Optional[int] = None,
        billing_reference: Optional[str] = None,
    ) -> int:
        async def _renew(account: Account) -> int:
            return await self.apply_renewal_locked(
                account,
                period_end_ms=period_end_ms,
                billing_reference=billing_reference,
            )

        granted = await self.store.run_serialized(account_id, _renew)
        logger.info("Renewal applied for account %s (granted %s)", account_id, granted)
        return granted

    async def sync_provider_status(
        self,
        account_id: str,
        *,
        provider_status: Optional[str],
        cancel_at_period_end: Optional[bool] = None,
        period_end_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        async def _sync(account: Account) -> None:
            await self.sync_provider_status_locked(
                account,
                provider_status=provider_status,
                cancel_at_period_end=cancel_at_period_end,
                period_end_ms=period_end_ms,
            )

        await self.store.run_serialized(account_id, _sync)
        return await self.get(account_id)

    async def history(self, account_id: str) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(BillingHistoryItem)
            .where(BillingHistoryItem.account_id == account_id)
            .order_by(BillingHistoryItem.billed_at_ms.desc(), BillingHistoryItem.pk.desc())
        )
        return [
            {
                "id": item.id,
                "date": item.billed_at_ms,
                "amount": item.amount,
                "description": item.description,
                "status": item.status,
            }
            for item in result.scalars().all()
        ]

    async def get(self, account_id: str) -> Dict[str, Any]:
        account = await self.store.require(account_id)
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.account_id == account_id)
            .execution_options(populate_existing=True)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise InvalidSubscriptionState(f"Account {account_id} has no subscription record.")
        return {
            "account_id": account.id,
            "status": subscription.status,
            "current_plan": subscription.plan,
            "start_date": subscription.started_at_ms,
            "current_period_end": subscription.current_period_end_ms,
            "cancel_at_period_end": bool(subscription.cancel_at_period_end),
            "credits": int(account.credits),
            "billing_history": await self.history(account_id),
        }
