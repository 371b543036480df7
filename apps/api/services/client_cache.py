"""Client-side credit cache and HTTP client.

The cache mirrors the account for responsiveness only. Every change is
two-phase: ``begin`` applies an optimistic deduction, then the server's
response either commits (adopting the server state) or rolls it back. Server
state always wins.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Dict, Optional
import uuid

import httpx

from services.errors import InsufficientCredits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedAccountState:
    credits: int
    plan: str
    total_generations: int

    @classmethod
    def from_response(cls, payload: Dict[str, Any], fallback: Optional["CachedAccountState"] = None) -> "CachedAccountState":
        """Read credits/plan/total_generations from any API response, keeping fallback fields it omits."""
        source = payload.get("account") if isinstance(payload.get("account"), dict) else payload
        credits = source.get("credits", source.get("balance"))
        if credits is None and fallback is None:
            raise ValueError("Response does not carry a credit balance.")
        return cls(
            credits=int(credits if credits is not None else fallback.credits),
            plan=str(source.get("plan") or source.get("current_plan") or (fallback.plan if fallback else "free")),
            total_generations=int(
                source.get("total_generations", fallback.total_generations if fallback else 0)
            ),
        )


@dataclass(frozen=True)
class PendingChange:
    change_id: str
    cost: int
    before: CachedAccountState


class ClientCreditCache:
    def __init__(self, state: Optional[CachedAccountState] = None):
        self.state = state or CachedAccountState(credits=0, plan="free", total_generations=0)
        self._pending: Dict[str, PendingChange] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def begin(self, cost: int) -> PendingChange:
        """Optimistically deduct ``cost``. Raises InsufficientCredits when the cached balance is short."""
        cost = int(cost)
        if self.state.credits < cost:
            raise InsufficientCredits(balance=self.state.credits, required=cost)
        change = PendingChange(change_id=uuid.uuid4().hex, cost=cost, before=self.state)
        self.state = replace(
            self.state,
            credits=self.state.credits - cost,
            total_generations=self.state.total_generations + 1,
        )
        self._pending[change.change_id] = change
        return change

    def commit(self, change: PendingChange, server_state: CachedAccountState) -> CachedAccountState:
        self._pending.pop(change.change_id, None)
        self.state = server_state
        return self.state

    def rollback(self, change: PendingChange, server_state: Optional[CachedAccountState] = None) -> CachedAccountState:
        """Discard ``change``; adopt ``server_state`` when the failure response carried one."""
        if self._pending.pop(change.change_id, None) is None:
            return self.state
        if server_state is not None:
            self.state = server_state
        else:
            self.state = replace(
                self.state,
                credits=self.state.credits + change.cost,
                total_generations=max(self.state.total_generations - 1, 0),
            )
        return self.state

    def reconcile(self, server_state: CachedAccountState) -> bool:
        """Adopt the server state. Returns True when the cache had drifted."""
        drifted = server_state != self.state
        if drifted:
            logger.info("Client cache drifted from server (%s -> %s)", self.state, server_state)
        self.state = server_state
        return drifted


class MeteredApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.payload = payload or {}


class MeteredApiClient:
    """Two-phase client for the generation API, driving a ClientCreditCache."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: Optional[str] = None,
        cache: Optional[ClientCreditCache] = None,
    ):
        self.client = client
        self.token = token
        self.cache = cache or ClientCreditCache()
        self.costs: Dict[str, int] = {}

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code < 400:
            return payload
        error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
        raise MeteredApiError(
            response.status_code,
            str(error.get("type") or "api_error"),
            str(error.get("message") or response.text),
            error,
        )

    async def start_session(self, email: Optional[str] = None) -> CachedAccountState:
        response = await self.client.post("/auth/session", json={"email": email})
        payload = self._raise_for_error(response)
        self.token = payload["session_token"]
        self.cache.reconcile(CachedAccountState.from_response(payload))
        return self.cache.state

    async def refresh(self) -> CachedAccountState:
        response = await self.client.post("/auth/refresh", headers=self._headers())
        payload = self._raise_for_error(response)
        self.token = payload["session_token"]
        self.cache.reconcile(CachedAccountState.from_response(payload))
        return self.cache.state

    async def sync(self) -> CachedAccountState:
        response = await self.client.get("/auth/me", headers=self._headers())
        payload = self._raise_for_error(response)
        self.cache.reconcile(CachedAccountState.from_response(payload))
        return self.cache.state

    async def load_costs(self) -> Dict[str, int]:
        response = await self.client.get("/billing/costs")
        self.costs = {key: int(value) for key, value in self._raise_for_error(response)["costs"].items()}
        return self.costs

    async def generate(self, operation_type: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Optimistic deduct, server call, then commit or roll back from the server's answer."""
        if not self.costs:
            await self.load_costs()
        change = self.cache.begin(self.costs.get(operation_type, 0))
        try:
            response = await self.client.post(
                f"/generate/{operation_type}",
                json={"params": params or {}},
                headers=self._headers(),
            )
            payload = self._raise_for_error(response)
        except MeteredApiError as exc:
            server_state = None
            if "balance" in exc.payload and exc.payload["balance"] is not None:
                server_state = CachedAccountState.from_response(exc.payload, fallback=change.before)
            self.cache.rollback(change, server_state)
            raise
        except httpx.HTTPError:
            self.cache.rollback(change)
            raise
        self.cache.commit(change, CachedAccountState.from_response(payload, fallback=self.cache.state))
        return payload
