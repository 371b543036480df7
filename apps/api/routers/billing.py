"""Billing and credits router."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import urlsplit

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from config import settings
from routers.auth_scope import (
    AuthContext,
    get_account_store,
    get_auth_context,
    get_ledger,
    get_payment_gateway,
    get_subscription_service,
)
from routers.rate_limit import rate_limit
from services.account_store import AccountStore
from services.credits import CreditLedger
from services.errors import InvalidOperation, InvalidPlan, WebhookSignatureInvalid
from services.payment_provider import StripeGateway
from services.plan_catalog import FREE_PLAN_ID, credit_costs, get_plan, list_plans, parse_operation_type
from services.subscriptions import SubscriptionService
from services.webhook_queue import enqueue_webhook_event
from services.webhooks import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


class DeductRequest(BaseModel):
    operation_type: str = Field(min_length=1, max_length=64)


class OperationRequest(BaseModel):
    operation_id: str = Field(min_length=1, max_length=128)


class RefundRequest(OperationRequest):
    reason: Optional[str] = Field(default=None, max_length=200)


class CheckoutRequest(BaseModel):
    plan_id: str
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


def _allowed_redirect(url: Optional[str], field: str) -> Optional[str]:
    """Checkout redirects may only return to one of the configured frontend origins."""
    if not url:
        return None
    parts = urlsplit(url)
    origin = f"{parts.scheme}://{parts.netloc}".lower()
    allowed = {item.rstrip("/").lower() for item in settings.CORS_ORIGINS}
    if parts.scheme not in ("http", "https") or origin not in allowed:
        raise InvalidOperation(f"{field} must point at an allowed frontend origin.")
    return url


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    return await ledger.summary(auth.account_id)


@router.get("/costs")
async def cost_table():
    return {
        "costs": credit_costs(),
        "plans": [
            {"id": plan.id, "name": plan.name, "price": plan.price, "monthly_credits": plan.monthly_credits}
            for plan in list_plans()
        ],
    }


@router.post("/deduct")
async def deduct_credits(
    request: DeductRequest,
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Charge the cost of one operation. Confirm or refund it by operation id afterwards."""
    operation = parse_operation_type(request.operation_type)
    deduction = await ledger.deduct(auth.account_id, credit_costs()[operation.value], operation_type=operation.value)
    return {
        "operation_id": deduction.operation_id,
        "operation_type": operation.value,
        "charged": deduction.charged,
        "balance": deduction.balance_after,
        "total_generations": deduction.total_generations,
    }


@router.post("/refund")
async def refund_credits(
    request: RefundRequest,
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    balance = await ledger.refund(auth.account_id, operation_id=request.operation_id, reason=request.reason)
    account = await ledger.get_account(auth.account_id)
    return {
        "operation_id": request.operation_id,
        "balance": balance,
        "total_generations": int(account.total_generations),
    }


@router.post("/confirm")
async def confirm_operation(
    request: OperationRequest,
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
):
    status = await ledger.confirm(auth.account_id, request.operation_id)
    return {"operation_id": request.operation_id, "status": status}


@router.post("/checkout")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    store: AccountStore = Depends(get_account_store),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    plan = get_plan(request.plan_id)
    if plan.id == FREE_PLAN_ID:
        raise InvalidPlan("The free plan does not require checkout.")
    success_url = _allowed_redirect(request.success_url, "success_url")
    cancel_url = _allowed_redirect(request.cancel_url, "cancel_url")
    account = await store.require(auth.account_id)
    session = await asyncio.to_thread(
        gateway.create_checkout_session,
        account_id=account.id,
        plan=plan,
        email=account.email,
        customer_id=account.stripe_customer_id,
        success_url=success_url,
        cancel_url=cancel_url,
    )
    logger.info("Created checkout session %s for account %s (%s)", session["id"], account.id, plan.id)
    return {"checkout_url": session["url"], "session_id": session["id"], "plan_id": plan.id}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    store: AccountStore = Depends(get_account_store),
    ledger: CreditLedger = Depends(get_ledger),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    """Stripe webhook endpoint. The raw body is required for signature verification."""
    payload = await request.body()

    if settings.WEBHOOK_PROCESSING_MODE == "queue":
        try:
            event = gateway.verify_and_parse(payload, stripe_signature)
        except WebhookSignatureInvalid:
            logger.warning("Rejected webhook before queueing")
            raise
        job = enqueue_webhook_event(event)
        logger.info("Queued webhook %s (%s) as job %s", event["id"], event["type"], job.id)
        return {"received": True, "status": "queued", "event_id": event["id"]}

    reconciler = WebhookReconciler(store, ledger, subscriptions, gateway)
    result = await reconciler.apply(payload, stripe_signature)
    if result.status == "rejected":
        raise WebhookSignatureInvalid(result.reason or "Invalid webhook signature.")
    return {"received": True, **result.to_dict()}
