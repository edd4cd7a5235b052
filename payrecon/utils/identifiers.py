from __future__ import annotations

import secrets
import string
from datetime import datetime

from payrecon.domain.enums import BillingCycle

_ALPHABET = string.ascii_lowercase + string.digits

PLAN_NAMES = {
    "basic": "Plan Podstawowy",
    "professional": "Plan Profesjonalny",
    "enterprise": "Plan Enterprise",
}


def generate_external_order_id(plan_id: str, user_id: str, now: datetime) -> str:
    """Return a caller-assigned order id unique per checkout attempt."""
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{plan_id}-{user_id}-{int(now.timestamp() * 1000)}-{suffix}"


def describe_plan(plan_id: str, billing_cycle: BillingCycle) -> str:
    plan_name = PLAN_NAMES.get(plan_id, "Plan")
    cycle_name = "miesięczny" if billing_cycle is BillingCycle.MONTHLY else "roczny"
    return f"{plan_name} - abonament {cycle_name} - Monitor Wizaro"
