"""Subscription router: plan changes the client may initiate without payment."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from routers.auth_scope import AuthContext, get_auth_context, get_subscription_service
from services.subscriptions import SubscriptionService

router = APIRouter()


class ChangePlanRequest(BaseModel):
    plan_id: str


@router.get("")
async def get_subscription(
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return await subscriptions.get(auth.account_id)


@router.post("/change-plan")
async def change_plan(
    request: ChangePlanRequest,
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    """Downgrade or renew the current plan. Upgrades grant credits and go through checkout."""
    return await subscriptions.change_plan(auth.account_id, request.plan_id, allow_upgrade=False)


@router.post("/cancel")
async def cancel_subscription(
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return await subscriptions.cancel(auth.account_id)


@router.post("/reactivate")
async def reactivate_subscription(
    auth: AuthContext = Depends(get_auth_context),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return await subscriptions.reactivate(auth.account_id)
