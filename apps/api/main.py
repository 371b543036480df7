"""
Credit Ledger API - FastAPI Backend
Main application entry point: account sessions, credits, subscriptions and Stripe webhooks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import Base, async_session_maker, engine
from error_handlers import register_exception_handlers
from logging_config import configure_logging
import models  # noqa: F401
from routers import auth, billing, generation, health, subscription
from services.account_store import AccountLockRegistry, AccountStore
from services.credits import CreditLedger

logger = logging.getLogger(__name__)


async def recover_interrupted_operations(locks: AccountLockRegistry) -> int:
    """Refund deductions whose caller died before confirming or refunding."""
    async with async_session_maker() as db:
        ledger = CreditLedger(AccountStore(db, locks))
        return await ledger.recover_stale_operations()


async def _periodic_operation_recovery(locks: AccountLockRegistry) -> None:
    interval_minutes = max(int(settings.PENDING_OPERATION_RECOVERY_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            recovered = await recover_interrupted_operations(locks)
            if recovered:
                logger.warning("Refunded %s interrupted operations", recovered)
        except Exception as exc:
            logger.warning("Interrupted operation recovery tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    configure_logging()
    logger.info("Starting Credit Ledger API")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified")
        except Exception as exc:
            logger.warning("Database bootstrap skipped: %s", exc)
    try:
        recovered = await recover_interrupted_operations(app.state.account_locks)
        if recovered:
            logger.warning("Refunded %s interrupted operations after startup", recovered)
    except Exception as exc:
        logger.warning("Interrupted operation recovery skipped: %s", exc)
    recovery_task = None
    if int(settings.PENDING_OPERATION_RECOVERY_INTERVAL_MINUTES) > 0:
        recovery_task = asyncio.create_task(_periodic_operation_recovery(app.state.account_locks))
        logger.info(
            "Pending operation recovery loop enabled (every %s min)",
            int(settings.PENDING_OPERATION_RECOVERY_INTERVAL_MINUTES),
        )
    yield
    if recovery_task is not None:
        recovery_task.cancel()
        try:
            await recovery_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API")
    await engine.dispose()


app = FastAPI(
    title="Credit Ledger API",
    description="Metered credits, subscription entitlements and payment reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.account_locks = AccountLockRegistry()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(subscription.router, prefix="/subscription", tags=["Subscription"])
app.include_router(generation.router, prefix="/generate", tags=["Generation"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
