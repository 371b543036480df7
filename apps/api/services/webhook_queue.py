"""Durable webhook event queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.account_store import AccountLockRegistry, AccountStore
from services.credits import CreditLedger
from services.payment_provider import StripeGateway
from services.subscriptions import SubscriptionService
from services.webhooks import WebhookReconciler, WebhookResult

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE_NAME = "webhook_events"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_webhook_queue() -> Queue:
    """Return the configured webhook event queue."""
    return Queue(
        name=WEBHOOK_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_webhook_event(event: Dict[str, Any]) -> Job:
    """Enqueue an already-verified event. The job id is derived from the event id, so redelivery is collapsed."""
    queue = get_webhook_queue()
    return queue.enqueue(
        "services.webhook_queue.process_webhook_event_job",
        event,
        job_id=f"webhook:{event['id']}",
        retry=Retry(max=5, interval=[5, 30, 120, 600, 1800]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


def build_reconciler(db, locks: AccountLockRegistry, gateway: Optional[StripeGateway] = None) -> WebhookReconciler:
    store = AccountStore(db, locks)
    ledger = CreditLedger(store)
    return WebhookReconciler(store, ledger, SubscriptionService(store, ledger), gateway or StripeGateway())


async def process_webhook_event_async(
    event: Dict[str, Any],
    locks: Optional[AccountLockRegistry] = None,
) -> WebhookResult:
    async with async_session_maker() as db:
        reconciler = build_reconciler(db, locks or AccountLockRegistry())
        return await reconciler.apply_event(event)


def process_webhook_event_job(event: Dict[str, Any]) -> Dict[str, Any]:
    """RQ worker entrypoint for webhook events."""
    result = asyncio.run(process_webhook_event_async(event))
    logger.info("Queued webhook %s finished: %s", result.event_id, result.status)
    return result.to_dict()
