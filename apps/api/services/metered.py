"""Metered actions: deduct, run the external action unlocked, then confirm or refund."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config import settings
from services.credits import CreditLedger
from services.errors import ExternalActionFailed
from services.plan_catalog import CreditOperationType, cost_for

logger = logging.getLogger(__name__)


class GenerationUnavailableError(RuntimeError):
    """Raised when the generation backend is not configured or unreachable."""


@dataclass(frozen=True)
class MeteredResult:
    operation_id: str
    operation_type: str
    charged: int
    balance_after: int
    total_generations: int
    output: Any


async def run_metered_action(
    ledger: CreditLedger,
    account_id: str,
    operation_type: CreditOperationType,
    action: Callable[[], Awaitable[Any]],
    *,
    timeout: Optional[float] = None,
) -> MeteredResult:
    """Charge for ``operation_type`` and run ``action``.

    The deduction and the refund are separate short critical sections; the
    action itself never runs while the account is locked. On failure or
    timeout the deduction is refunded once by operation id and
    ExternalActionFailed is raised. A cancelled caller is refunded the same
    way before the cancellation propagates.
    """
    cost = cost_for(operation_type)
    deduction = await ledger.deduct(account_id, cost, operation_type=operation_type.value)
    limit = float(timeout or settings.EXTERNAL_ACTION_TIMEOUT_SECONDS)

    try:
        output = await asyncio.wait_for(action(), timeout=limit)
    except asyncio.CancelledError:
        logger.warning(
            "%s cancelled for account %s; reversing operation %s",
            operation_type.value,
            account_id,
            deduction.operation_id,
        )
        # The refund must finish even if the caller is cancelled again.
        await asyncio.shield(
            ledger.refund(
                account_id,
                deduction.charged,
                operation_id=deduction.operation_id,
                reason=f"Refund for cancelled {operation_type.value}",
            )
        )
        raise
    except Exception as exc:
        reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or exc.__class__.__name__
        logger.warning(
            "%s failed for account %s (%s); reversing operation %s",
            operation_type.value,
            account_id,
            reason,
            deduction.operation_id,
        )
        balance = await ledger.refund(
            account_id,
            deduction.charged,
            operation_id=deduction.operation_id,
            reason=f"Refund for failed {operation_type.value}",
        )
        raise ExternalActionFailed(
            f"{operation_type.value} failed: {reason}. {deduction.charged} credits refunded.",
            operation_id=deduction.operation_id,
            balance_after=balance,
        ) from exc

    await ledger.confirm(account_id, deduction.operation_id)
    return MeteredResult(
        operation_id=deduction.operation_id,
        operation_type=operation_type.value,
        charged=deduction.charged,
        balance_after=deduction.balance_after,
        total_generations=deduction.total_generations,
        output=output,
    )


class GenerationBackend(ABC):
    """Opaque external generator invoked only after a successful deduction."""

    @abstractmethod
    async def generate(self, operation_type: CreditOperationType, params: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class UnconfiguredGenerationBackend(GenerationBackend):
    """Fails deterministically until GENERATION_BACKEND_URL is set."""

    async def generate(self, operation_type: CreditOperationType, params: Dict[str, Any]) -> Dict[str, Any]:
        raise GenerationUnavailableError("Generation backend is not configured. Set GENERATION_BACKEND_URL.")


class HttpGenerationBackend(GenerationBackend):
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = float(timeout or settings.EXTERNAL_ACTION_TIMEOUT_SECONDS)

    async def generate(self, operation_type: CreditOperationType, params: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/{operation_type.value}",
                    headers=headers,
                    json=params,
                )
            except httpx.HTTPError as exc:
                raise GenerationUnavailableError(f"Generation backend unreachable: {exc}") from exc
        if response.status_code >= 400:
            logger.error("Generation backend returned %s: %s", response.status_code, response.text[:500])
            raise GenerationUnavailableError(f"Generation backend returned HTTP {response.status_code}.")
        return response.json()


def get_generation_backend() -> GenerationBackend:
    """FastAPI dependency; tests override it with a fake backend."""
    base_url = (settings.GENERATION_BACKEND_URL or "").strip()
    if not base_url:
        return UnconfiguredGenerationBackend()
    return HttpGenerationBackend(base_url, api_key=settings.GENERATION_BACKEND_API_KEY or None)
