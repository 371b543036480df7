"""Account session tokens.

Format: ``base64url(header).base64url(payload).base64url(HMAC-SHA256)`` with
header ``{"alg": "HS256", "typ": "JWT"}``. The payload is a snapshot of the
account (``accountId``, ``credits``, ``plan``, ``totalGenerations``,
``issuedAt``, ``expiresAt``; Unix milliseconds). The snapshot is a cached
convenience only: balance-affecting operations always re-read the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import time
from typing import Any, Dict, Optional

from jose import jws, jwt
from jose.exceptions import JWSError
from jose.utils import base64url_decode

from config import settings
from services.errors import InvalidSignature, MalformedToken, TokenExpired


SESSION_TOKEN_TYPE = "account_session"
TOKEN_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ("accountId", "credits", "plan", "totalGenerations", "issuedAt", "expiresAt")


@dataclass(frozen=True)
class AccountSnapshot:
    account_id: str
    credits: int
    plan: str
    total_generations: int
    issued_at: int = 0
    expires_at: int = 0

    def to_claims(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "credits": int(self.credits),
            "plan": self.plan,
            "totalGenerations": int(self.total_generations),
            "issuedAt": int(self.issued_at),
            "expiresAt": int(self.expires_at),
            "type": SESSION_TOKEN_TYPE,
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    snapshot: AccountSnapshot

    @property
    def expires_at(self) -> int:
        return self.snapshot.expires_at


def snapshot_from_account(account) -> AccountSnapshot:
    """Build an unsigned snapshot from the authoritative account row."""
    return AccountSnapshot(
        account_id=str(account.id),
        credits=int(account.credits),
        plan=str(account.plan),
        total_generations=int(account.total_generations),
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


def issue_token(
    snapshot: AccountSnapshot,
    *,
    now_ms: Optional[int] = None,
    ttl_hours: Optional[int] = None,
    secret: Optional[str] = None,
) -> IssuedToken:
    """Sign ``snapshot`` with a fixed TTL (TOKEN_TTL_HOURS, 24h by default)."""
    issued_at = int(now_ms if now_ms is not None else _now_ms())
    ttl = int(ttl_hours or settings.TOKEN_TTL_HOURS or 24)
    stamped = AccountSnapshot(
        account_id=snapshot.account_id,
        credits=snapshot.credits,
        plan=snapshot.plan,
        total_generations=snapshot.total_generations,
        issued_at=issued_at,
        expires_at=issued_at + max(ttl, 1) * 60 * 60 * 1000,
    )
    return sign_snapshot(stamped, secret=secret)


def sign_snapshot(snapshot: AccountSnapshot, *, secret: Optional[str] = None) -> IssuedToken:
    """Sign a snapshot as-is, keeping its issuedAt/expiresAt."""
    token = jwt.encode(
        snapshot.to_claims(),
        secret or settings.TOKEN_SECRET,
        algorithm=TOKEN_ALGORITHM,
    )
    return IssuedToken(token=token, snapshot=snapshot)


def _decode_segment(segment: str) -> Dict[str, Any]:
    try:
        decoded = json.loads(base64url_decode(segment.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise MalformedToken("Session token segment is not valid base64url JSON.") from exc
    if not isinstance(decoded, dict):
        raise MalformedToken("Session token segment is not a JSON object.")
    return decoded


def verify_token(token: str, *, now_ms: Optional[int] = None, secret: Optional[str] = None) -> AccountSnapshot:
    """Verify signature and expiry and return the embedded snapshot.

    Raises MalformedToken, InvalidSignature or TokenExpired.
    """
    parts = str(token or "").strip().split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedToken("Session token must have three segments.")

    header = _decode_segment(parts[0])
    if header.get("alg") != TOKEN_ALGORITHM:
        raise MalformedToken("Unsupported session token algorithm.")
    payload = _decode_segment(parts[1])

    # python-jose compares the HMAC with hmac.compare_digest.
    try:
        jws.verify(".".join(parts), secret or settings.TOKEN_SECRET, algorithms=[TOKEN_ALGORITHM])
    except JWSError as exc:
        raise InvalidSignature("Session token signature is invalid.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise MalformedToken("Invalid session token type.")
    missing = [claim for claim in REQUIRED_CLAIMS if claim not in payload]
    if missing:
        raise MalformedToken(f"Session token missing claims: {', '.join(missing)}.")

    try:
        snapshot = AccountSnapshot(
            account_id=str(payload["accountId"]).strip(),
            credits=int(payload["credits"]),
            plan=str(payload["plan"]),
            total_generations=int(payload["totalGenerations"]),
            issued_at=int(payload["issuedAt"]),
            expires_at=int(payload["expiresAt"]),
        )
    except (TypeError, ValueError) as exc:
        raise MalformedToken("Session token claims have invalid types.") from exc
    if not snapshot.account_id:
        raise MalformedToken("Session token missing account id.")

    current = int(now_ms if now_ms is not None else _now_ms())
    if current > snapshot.expires_at:
        raise TokenExpired("Session token has expired.")
    return snapshot
