"""
Authentication router: account sessions backed by signed snapshot tokens.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context, get_ledger
from routers.rate_limit import rate_limit
from services.credits import CreditLedger
from services.session_token import issue_token, snapshot_from_account

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateSessionRequest(BaseModel):
    email: Optional[str] = None


class AccountState(BaseModel):
    account_id: str
    credits: int
    plan: str
    total_generations: int


class SessionResponse(BaseModel):
    session_token: str
    session_expires_at: int
    account: AccountState


class CurrentAccountResponse(AccountState):
    session_expires_at: int


def _session_response(account) -> SessionResponse:
    issued = issue_token(snapshot_from_account(account))
    return SessionResponse(
        session_token=issued.token,
        session_expires_at=issued.expires_at,
        account=AccountState(
            account_id=issued.snapshot.account_id,
            credits=issued.snapshot.credits,
            plan=issued.snapshot.plan,
            total_generations=issued.snapshot.total_generations,
        ),
    )


@router.post(
    "/session",
    response_model=SessionResponse,
    dependencies=[Depends(rate_limit("auth_session", limit=10, window_seconds=60))],
)
async def create_session(
    request: Optional[CreateSessionRequest] = None,
    ledger: CreditLedger = Depends(get_ledger),
):
    """Create a new account with the starter balance and return its session token."""
    account = await ledger.ensure_account(email=request.email if request else None)
    return _session_response(account)


@router.post("/refresh", response_model=SessionResponse)
async def refresh_session(
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Re-issue the token with a fresh snapshot read from the ledger."""
    account = await ledger.get_account(auth.account_id)
    return _session_response(account)


@router.get("/me", response_model=CurrentAccountResponse)
async def get_current_account(
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Authoritative account state (the token snapshot may be stale)."""
    account = await ledger.get_account(auth.account_id)
    return CurrentAccountResponse(
        account_id=account.id,
        credits=int(account.credits),
        plan=account.plan,
        total_generations=int(account.total_generations),
        session_expires_at=auth.snapshot.expires_at,
    )
