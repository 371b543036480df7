"""Static plan catalog and billable operation cost table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from config import settings
from services.errors import InvalidOperation, InvalidPlan


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: str
    monthly_credits: int
    priority: int


PLANS: Dict[str, Plan] = {
    "free": Plan(id="free", name="Free Trial", price="$0", monthly_credits=10, priority=0),
    "creator": Plan(id="creator", name="Creator", price="$19/mo", monthly_credits=1000, priority=1),
    "agency": Plan(id="agency", name="Agency", price="$49/mo", monthly_credits=5000, priority=2),
}

FREE_PLAN_ID = "free"
PAID_PLAN_IDS = ("creator", "agency")


class CreditOperationType(str, Enum):
    THUMBNAIL_STANDARD = "thumbnail_standard"
    THUMBNAIL_HIGH = "thumbnail_high"
    THUMBNAIL_ULTRA = "thumbnail_ultra"
    VIDEO = "video"
    AUDIT = "audit"
    METADATA = "metadata"


QUALITY_OPERATIONS: Dict[str, CreditOperationType] = {
    "standard": CreditOperationType.THUMBNAIL_STANDARD,
    "high": CreditOperationType.THUMBNAIL_HIGH,
    "ultra": CreditOperationType.THUMBNAIL_ULTRA,
}


def get_plan(plan_id: str) -> Plan:
    """Return the catalog entry for plan_id or raise InvalidPlan."""
    plan = PLANS.get(str(plan_id or "").strip().lower())
    if plan is None:
        raise InvalidPlan(f"Unknown plan '{plan_id}'. Expected one of: {', '.join(PLANS)}.")
    return plan


def list_plans() -> List[Plan]:
    return sorted(PLANS.values(), key=lambda plan: plan.priority)


def plan_priority(plan_id: str) -> int:
    return get_plan(plan_id).priority


def is_upgrade(current_plan: str, target_plan: str) -> bool:
    return plan_priority(target_plan) > plan_priority(current_plan)


def is_downgrade(current_plan: str, target_plan: str) -> bool:
    return plan_priority(target_plan) < plan_priority(current_plan)


def credit_costs() -> Dict[str, int]:
    """Cost table keyed by operation type value. Read from settings on every call."""
    return {
        CreditOperationType.THUMBNAIL_STANDARD.value: max(int(settings.CREDIT_COST_THUMBNAIL_STANDARD), 0),
        CreditOperationType.THUMBNAIL_HIGH.value: max(int(settings.CREDIT_COST_THUMBNAIL_HIGH), 0),
        CreditOperationType.THUMBNAIL_ULTRA.value: max(int(settings.CREDIT_COST_THUMBNAIL_ULTRA), 0),
        CreditOperationType.VIDEO.value: max(int(settings.CREDIT_COST_VIDEO), 0),
        CreditOperationType.AUDIT.value: max(int(settings.CREDIT_COST_AUDIT), 0),
        CreditOperationType.METADATA.value: max(int(settings.CREDIT_COST_METADATA), 0),
    }


def parse_operation_type(value: str) -> CreditOperationType:
    try:
        return CreditOperationType(str(value or "").strip().lower())
    except ValueError as exc:
        allowed = ", ".join(op.value for op in CreditOperationType)
        raise InvalidOperation(f"Unknown operation type '{value}'. Expected one of: {allowed}.") from exc


def cost_for(operation_type) -> int:
    operation = parse_operation_type(getattr(operation_type, "value", operation_type))
    return credit_costs()[operation.value]


def operation_for_quality(quality: str) -> CreditOperationType:
    """Map a thumbnail quality level to its billable operation (standard by default)."""
    return QUALITY_OPERATIONS.get(str(quality or "").strip().lower(), CreditOperationType.THUMBNAIL_STANDARD)
