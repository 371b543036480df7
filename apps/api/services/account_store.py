"""Account store: the persistence seam shared by the ledger, subscriptions and webhooks.

All balance-affecting work for one account runs through ``run_serialized``,
which combines three guards:

1. an in-process ``asyncio.Lock`` per account id (``AccountLockRegistry``),
2. ``SELECT ... FOR UPDATE`` on the account row (row lock on PostgreSQL),
3. the account ``version`` column, so a write racing in from another process
   raises ``StaleDataError`` and the whole critical section is retried.

Locks are per account; different accounts never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.account import Account
from services.errors import AccountNotFound, ConcurrentUpdateError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def now_ms() -> int:
    return int(time.time() * 1000)


def billing_period_ms() -> int:
    return max(int(settings.BILLING_PERIOD_DAYS), 1) * 24 * 60 * 60 * 1000


class AccountLockRegistry:
    """Per-account mutual exclusion for one process.

    Created by the application (or worker) at startup and injected; entries
    are dropped once no coroutine holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        self._holders[account_id] = self._holders.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._holders[account_id] - 1
            if remaining:
                self._holders[account_id] = remaining
            else:
                self._holders.pop(account_id, None)
                self._locks.pop(account_id, None)

    def is_locked(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)


class AccountStore:
    """Get/put access to accounts plus a transactional per-account update."""

    def __init__(self, db: AsyncSession, locks: AccountLockRegistry, max_retries: Optional[int] = None):
        self.db = db
        self.locks = locks
        self.max_retries = max(int(max_retries or settings.LEDGER_MAX_RETRIES or 1), 1)

    async def get(self, account_id: str) -> Optional[Account]:
        result = await self.db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, account_id: str) -> Account:
        account = await self.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def find_by_customer_id(self, customer_id: Optional[str]) -> Optional[Account]:
        if not customer_id:
            return None
        result = await self.db.execute(select(Account).where(Account.stripe_customer_id == customer_id))
        return result.scalar_one_or_none()

    async def find_by_email(self, email: Optional[str]) -> Optional[Account]:
        normalized = str(email or "").strip().lower()
        if not normalized:
            return None
        result = await self.db.execute(
            select(Account).where(Account.email == normalized).order_by(Account.created_at.asc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def load_for_update(self, account_id: str) -> Account:
        result = await self.db.execute(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def run_serialized(self, account_id: str, operation: Callable[[Account], Awaitable[T]]) -> T:
        """Run ``operation`` on the freshly locked account and commit, all-or-nothing."""
        for attempt in range(1, self.max_retries + 1):
            async with self.locks.hold(account_id):
                try:
                    account = await self.load_for_update(account_id)
                    result = await operation(account)
                    await self.db.commit()
                    return result
                except StaleDataError:
                    await self.db.rollback()
                    logger.warning(
                        "Concurrent update on account %s (attempt %s/%s); retrying",
                        account_id,
                        attempt,
                        self.max_retries,
                    )
                except Exception:
                    await self.db.rollback()
                    raise
        raise ConcurrentUpdateError(f"Account {account_id} is being updated concurrently. Try again.")
