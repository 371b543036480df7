"""Domain errors raised by the ledger, token and subscription services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer errors."""

    status_code = 400
    code = "service_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code

    def details(self) -> Dict[str, Any]:
        """Extra fields rendered into the error envelope."""
        return {}


class InsufficientCredits(ServiceError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {balance}. "
            "Top up credits to continue."
        )
        self.balance = balance
        self.required = required

    def details(self) -> Dict[str, Any]:
        return {"balance": self.balance, "required": self.required}


class AccountNotFound(ServiceError):
    status_code = 404
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found.")
        self.account_id = account_id


class OperationNotFound(ServiceError):
    status_code = 404
    code = "operation_not_found"

    def __init__(self, operation_id: str):
        super().__init__(f"Pending operation {operation_id} not found.")
        self.operation_id = operation_id


class InvalidPlan(ServiceError):
    code = "invalid_plan"


class InvalidOperation(ServiceError):
    code = "invalid_operation"


class InvalidSubscriptionState(ServiceError):
    status_code = 409
    code = "invalid_subscription_state"


class ConcurrentUpdateError(ServiceError):
    status_code = 409
    code = "concurrent_update"


class TokenError(ServiceError):
    """Any token failure. Callers must re-authenticate; never retried."""

    status_code = 401
    code = "invalid_token"


class MalformedToken(TokenError):
    code = "malformed_token"


class InvalidSignature(TokenError):
    code = "invalid_signature"


class TokenExpired(TokenError):
    code = "token_expired"


class WebhookSignatureInvalid(ServiceError):
    code = "webhook_signature_invalid"


class PaymentProviderError(ServiceError):
    status_code = 503
    code = "payment_provider_error"


class ExternalActionFailed(ServiceError):
    """The gated external action failed; the deduction has been refunded."""

    status_code = 502
    code = "external_action_failed"

    def __init__(self, message: str, *, operation_id: str, balance_after: Optional[int] = None):
        super().__init__(message)
        self.operation_id = operation_id
        self.balance_after = balance_after

    def details(self) -> Dict[str, Any]:
        return {"operation_id": self.operation_id, "balance": self.balance_after}
