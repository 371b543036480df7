"""
Liveness, readiness and dependency status for the credit ledger service.
"""

from typing import Any, Dict, List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
import redis.asyncio as redis

from config import settings
from database import engine
from models.pending_operation import PendingOperation
from services.account_store import now_ms

router = APIRouter()


def _missing_billing_settings() -> List[str]:
    missing = []
    if not settings.STRIPE_WEBHOOK_SECRET:
        missing.append("STRIPE_WEBHOOK_SECRET")
    if not settings.STRIPE_SECRET_KEY:
        missing.append("STRIPE_SECRET_KEY")
    return missing


async def _ledger_status() -> Dict[str, Any]:
    """Reachability of the ledger database plus deductions nobody confirmed or refunded."""
    cutoff_ms = now_ms() - max(int(settings.PENDING_OPERATION_TIMEOUT_MINUTES), 1) * 60 * 1000
    async with engine.connect() as conn:
        overdue = await conn.scalar(
            select(func.count())
            .select_from(PendingOperation)
            .where(PendingOperation.status == "pending", PendingOperation.created_at_ms < cutoff_ms)
        )
    return {"database": "up", "overdue_pending_operations": int(overdue or 0)}


@router.get("/health")
async def health_check():
    """Ledger database, Redis and payment provider configuration.

    Redis only degrades the service when webhooks are processed through the
    queue; inline mode and rate limits work without it.
    """
    report: Dict[str, Any] = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "stripe": "missing" if _missing_billing_settings() else "configured",
        "webhook_mode": settings.WEBHOOK_PROCESSING_MODE,
    }

    try:
        report.update(await _ledger_status())
    except Exception as exc:
        report["database"] = f"down: {exc}"
        report["status"] = "degraded"

    try:
        client = redis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
        finally:
            await client.aclose()
        report["redis"] = "up"
    except redis.RedisError as exc:
        report["redis"] = f"down: {exc}"
        if settings.WEBHOOK_PROCESSING_MODE == "queue":
            report["status"] = "degraded"

    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once webhooks can be verified and checkout sessions created."""
    missing = _missing_billing_settings()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
