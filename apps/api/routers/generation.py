"""Generation router: credit-gated calls to the external generation backend."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, get_auth_context, get_ledger
from routers.rate_limit import rate_limit
from services.credits import CreditLedger
from services.metered import GenerationBackend, get_generation_backend, run_metered_action
from services.plan_catalog import operation_for_quality, parse_operation_type

router = APIRouter()


class GenerateRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)
    quality: Optional[str] = None


@router.post("/{operation_type}")
async def generate(
    operation_type: str,
    request: Optional[GenerateRequest] = None,
    _rate_limit: None = Depends(rate_limit("generate", limit=60, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: CreditLedger = Depends(get_ledger),
    backend: GenerationBackend = Depends(get_generation_backend),
):
    """Deduct, call the backend outside the account lock, then confirm or refund."""
    body = request or GenerateRequest()
    if operation_type == "thumbnail":
        operation = operation_for_quality(body.quality or "standard")
    else:
        operation = parse_operation_type(operation_type)

    async def _action() -> Dict[str, Any]:
        return await backend.generate(operation, body.params)

    result = await run_metered_action(ledger, auth.account_id, operation, _action)
    return {
        "operation_id": result.operation_id,
        "operation_type": result.operation_type,
        "charged": result.charged,
        "balance": result.balance_after,
        "total_generations": result.total_generations,
        "output": result.output,
    }
