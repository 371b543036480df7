"""Models package."""

from .account import Account
from .subscription import Subscription
from .billing_history import BillingHistoryItem
from .credit_ledger import CreditLedger
from .pending_operation import PendingOperation
from .processed_webhook_event import ProcessedWebhookEvent
