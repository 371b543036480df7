"""Credit ledger: authoritative deduct / refund / add operations per account."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional, Tuple
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.credit_ledger import CreditLedger as CreditLedgerEntry
from models.pending_operation import PendingOperation
from models.subscription import Subscription
from services.account_store import AccountStore, billing_period_ms, now_ms
from services.errors import (
    InsufficientCredits,
    InvalidOperation,
    OperationNotFound,
    ServiceError,
)
from services.plan_catalog import FREE_PLAN_ID, credit_costs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deduction:
    operation_id: str
    charged: int
    balance_after: int
    total_generations: int


class CreditLedger:
    """Ledger operations for one database session.

    Public methods each run as a single serialized critical section through the
    account store. The ``*_in_transaction`` helpers are for callers that already
    hold the account's critical section (subscription changes, webhooks).
    """

    def __init__(self, store: AccountStore):
        self.store = store
        self.db = store.db

    def record_entry(
        self,
        account: Account,
        *,
        entry_type: str,
        delta_credits: int,
        reason: Optional[str] = None,
        operation_type: Optional[str] = None,
        operation_id: Optional[str] = None,
        billing_provider: Optional[str] = None,
        billing_reference: Optional[str] = None,
    ) -> CreditLedgerEntry:
        entry = CreditLedgerEntry(
            id=str(uuid.uuid4()),
            account_id=account.id,
            entry_type=entry_type,
            delta_credits=int(delta_credits),
            balance_after=int(account.credits),
            reason=reason,
            operation_type=operation_type,
            operation_id=operation_id,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
        self.db.add(entry)
        return entry

    def grant_in_transaction(
        self,
        account: Account,
        amount: int,
        reason_tag: str,
        *,
        entry_type: str = "grant",
        billing_provider: Optional[str] = None,
        billing_reference: Optional[str] = None,
    ) -> int:
        grant = int(amount)
        if grant <= 0:
            raise InvalidOperation("credits must be greater than 0")
        account.credits = int(account.credits) + grant
        self.record_entry(
            account,
            entry_type=entry_type,
            delta_credits=grant,
            reason=reason_tag,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
        return int(account.credits)

    async def ensure_account(self, account_id: Optional[str] = None, *, email: Optional[str] = None) -> Account:
        """Return the account, creating it with the starter balance on first use."""
        if account_id:
            existing = await self.store.get(account_id)
            if existing is not None:
                return existing

        starter = max(int(settings.STARTER_CREDITS), 0)
        created_ms = now_ms()
        account = Account(
            id=account_id or str(uuid.uuid4()),
            email=str(email).strip().lower() if email else None,
            credits=starter,
            plan=FREE_PLAN_ID,
            total_generations=0,
        )
        account.subscription = Subscription(
            status="trialing",
            plan=FREE_PLAN_ID,
            started_at_ms=created_ms,
            current_period_end_ms=created_ms + billing_period_ms(),
            cancel_at_period_end=False,
        )
        self.db.add(account)
        self.record_entry(account, entry_type="starter_grant", delta_credits=starter, reason="Starter credits")
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.store.get(account.id)
            if existing is None:
                raise
            return existing
        logger.info("Created account %s with %s starter credits", account.id, starter)
        return account

    async def get_account(self, account_id: str) -> Account:
        return await self.store.require(account_id)

    async def get_balance(self, account_id: str) -> int:
        account = await self.store.require(account_id)
        return int(account.credits)

    async def deduct(self, account_id: str, cost: int, *, operation_type: Optional[str] = None) -> Deduction:
        """Atomically charge ``cost`` or raise InsufficientCredits without mutating."""
        debit_cost = int(cost)
        if debit_cost < 0:
            raise InvalidOperation("cost must be non-negative")

        async def _deduct(account: Account) -> Deduction:
            balance = int(account.credits)
            if balance < debit_cost:
                raise InsufficientCredits(balance=balance, required=debit_cost)
            account.credits = balance - debit_cost
            account.total_generations = int(account.total_generations) + 1
            operation_id = f"op_{uuid.uuid4().hex}"
            self.db.add(
                PendingOperation(
                    id=operation_id,
                    account_id=account.id,
                    operation_type=operation_type,
                    cost=debit_cost,
                    status="pending",
                    created_at_ms=now_ms(),
                )
            )
            self.record_entry(
                account,
                entry_type="debit",
                delta_credits=-debit_cost,
                reason=f"Charge for {operation_type}" if operation_type else "Charge",
                operation_type=operation_type,
                operation_id=operation_id,
            )
            return Deduction(
                operation_id=operation_id,
                charged=debit_cost,
                balance_after=int(account.credits),
                total_generations=int(account.total_generations),
            )

        try:
            deduction = await self.store.run_serialized(account_id, _deduct)
        except InsufficientCredits as exc:
            logger.info(
                "Deduction refused for account %s: required=%s available=%s",
                account_id,
                exc.required,
                exc.balance,
            )
            raise
        logger.info(
            "Deducted %s credits from account %s (operation %s, balance now %s)",
            deduction.charged,
            account_id,
            deduction.operation_id,
            deduction.balance_after,
        )
        return deduction

    async def _load_operation(self, account: Account, operation_id: str) -> PendingOperation:
        result = await self.db.execute(
            select(PendingOperation)
            .where(PendingOperation.id == operation_id, PendingOperation.account_id == account.id)
            .execution_options(populate_existing=True)
        )
        operation = result.scalar_one_or_none()
        if operation is None:
            raise OperationNotFound(operation_id)
        return operation

    async def _refund(
        self,
        account_id: str,
        cost: Optional[int],
        operation_id: Optional[str],
        reason: Optional[str],
    ) -> Tuple[int, bool]:
        if cost is None and not operation_id:
            raise InvalidOperation("refund requires a cost or an operation_id")
        if cost is not None and int(cost) < 0:
            raise InvalidOperation("cost must be non-negative")

        async def _apply(account: Account) -> Tuple[int, bool]:
            amount = int(cost) if cost is not None else None
            operation_type = None
            if operation_id:
                operation = await self._load_operation(account, operation_id)
                if operation.status == "refunded":
                    logger.warning("Operation %s was already refunded; ignoring duplicate refund", operation_id)
                    return int(account.credits), False
                if operation.status == "confirmed":
                    raise InvalidOperation(f"Operation {operation_id} was confirmed and cannot be refunded.")
                if amount is not None and amount != int(operation.cost):
                    raise InvalidOperation(
                        f"Refund amount {amount} does not match the {operation.cost} credits deducted by {operation_id}."
                    )
                amount = int(operation.cost)
                operation_type = operation.operation_type
                operation.status = "refunded"
                operation.resolved_at_ms = now_ms()

            account.credits = int(account.credits) + amount
            account.total_generations = max(int(account.total_generations) - 1, 0)
            self.record_entry(
                account,
                entry_type="refund",
                delta_credits=amount,
                reason=reason or "Refund for failed operation",
                operation_type=operation_type,
                operation_id=operation_id,
            )
            return int(account.credits), True

        balance, applied = await self.store.run_serialized(account_id, _apply)
        if applied:
            logger.info(
                "Refunded account %s (operation %s, balance now %s)",
                account_id,
                operation_id or "-",
                balance,
            )
        return balance, applied

    async def refund(
        self,
        account_id: str,
        cost: Optional[int] = None,
        *,
        operation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """Undo a previous successful deduction whose downstream action failed.

        With ``operation_id`` the refund is exactly-once: the pending record is
        moved to ``refunded`` and a repeat call is a no-op. Without it the caller
        is responsible for matching a prior deduct.
        """
        balance, _applied = await self._refund(account_id, cost, operation_id, reason)
        return balance

    async def confirm(self, account_id: str, operation_id: str) -> str:
        """Mark a pending deduction as settled after the external action succeeded."""

        async def _confirm(account: Account) -> str:
            operation = await self._load_operation(account, operation_id)
            if operation.status == "refunded":
                raise InvalidOperation(f"Operation {operation_id} was already refunded.")
            if operation.status == "pending":
                operation.status = "confirmed"
                operation.resolved_at_ms = now_ms()
            return operation.status

        return await self.store.run_serialized(account_id, _confirm)

    async def add_credits(
        self,
        account_id: str,
        amount: int,
        reason_tag: str,
        *,
        billing_provider: Optional[str] = None,
        billing_reference: Optional[str] = None,
    ) -> int:
        entry_type = "purchase" if billing_provider else "grant"

        async def _add(account: Account) -> int:
            return self.grant_in_transaction(
                account,
                amount,
                reason_tag,
                entry_type=entry_type,
                billing_provider=billing_provider,
                billing_reference=billing_reference,
            )

        balance = await self.store.run_serialized(account_id, _add)
        logger.info("Added %s credits to account %s (%s), balance now %s", amount, account_id, reason_tag, balance)
        return balance

    async def recover_stale_operations(self, older_than_minutes: Optional[int] = None) -> int:
        """Refund pending deductions left behind by a crash between deduct and refund."""
        minutes = int(older_than_minutes or settings.PENDING_OPERATION_TIMEOUT_MINUTES)
        cutoff = now_ms() - max(minutes, 1) * 60 * 1000
        result = await self.db.execute(
            select(PendingOperation.id, PendingOperation.account_id, PendingOperation.cost).where(
                PendingOperation.status == "pending",
                PendingOperation.created_at_ms < cutoff,
            )
        )
        stale = result.all()
        await self.db.commit()

        recovered = 0
        for operation_id, account_id, cost in stale:
            try:
                _balance, applied = await self._refund(
                    account_id,
                    cost,
                    operation_id,
                    "Refund for interrupted operation",
                )
            except ServiceError as exc:
                logger.warning("Skipped recovery of operation %s: %s", operation_id, exc)
                continue
            if applied:
                recovered += 1
                logger.warning(
                    "Recovered interrupted operation %s: refunded %s credits to account %s",
                    operation_id,
                    cost,
                    account_id,
                )
        return recovered

    async def summary(self, account_id: str, *, limit: int = 30) -> Dict[str, Any]:
        account = await self.store.require(account_id)
        result = await self.db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.account_id == account_id)
            .order_by(CreditLedgerEntry.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        entries = result.scalars().all()
        pending = await self.db.execute(
            select(PendingOperation).where(
                PendingOperation.account_id == account_id,
                PendingOperation.status == "pending",
            )
        )
        return {
            "account_id": account.id,
            "balance": int(account.credits),
            "plan": account.plan,
            "total_generations": int(account.total_generations),
            "costs": credit_costs(),
            "pending_operations": [
                {"operation_id": op.id, "operation_type": op.operation_type, "cost": op.cost}
                for op in pending.scalars().all()
            ],
            "recent_entries": [
                {
                    "id": entry.id,
                    "entry_type": entry.entry_type,
                    "delta_credits": entry.delta_credits,
                    "balance_after": entry.balance_after,
                    "reason": entry.reason,
                    "operation_id": entry.operation_id,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
        }
