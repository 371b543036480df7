"""Authentication and service dependencies for account-scoped routes."""

from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.account_store import AccountLockRegistry, AccountStore
from services.credits import CreditLedger
from services.errors import MalformedToken
from services.payment_provider import StripeGateway
from services.session_token import AccountSnapshot, verify_token
from services.subscriptions import SubscriptionService


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    account_id: str
    snapshot: AccountSnapshot


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the account from a Bearer session token (signature and expiry only)."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise MalformedToken("Missing Bearer session token.")
    snapshot = verify_token(credentials.credentials)
    return AuthContext(account_id=snapshot.account_id, snapshot=snapshot)


def get_lock_registry(request: Request) -> AccountLockRegistry:
    registry = getattr(request.app.state, "account_locks", None)
    if registry is None:
        registry = AccountLockRegistry()
        request.app.state.account_locks = registry
    return registry


def get_account_store(
    db: AsyncSession = Depends(get_db),
    locks: AccountLockRegistry = Depends(get_lock_registry),
) -> AccountStore:
    return AccountStore(db, locks)


def get_ledger(store: AccountStore = Depends(get_account_store)) -> CreditLedger:
    return CreditLedger(store)


def get_subscription_service(
    store: AccountStore = Depends(get_account_store),
    ledger: CreditLedger = Depends(get_ledger),
) -> SubscriptionService:
    return SubscriptionService(store, ledger)


def get_payment_gateway() -> StripeGateway:
    return StripeGateway()
