"""Provider status mapping and the order transition function.

Everything here is pure: no I/O, no clock, no store.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict

from payrecon.domain.enums import ProviderName
from payrecon.domain.statuses import OrderStatus

PROVIDER_STATUS_TABLE: Dict[ProviderName, Dict[str, OrderStatus]] = {
    ProviderName.PAYU: {
        "NEW": OrderStatus.PENDING,
        "PENDING": OrderStatus.PENDING,
        "WAITING_FOR_CONFIRMATION": OrderStatus.PENDING,
        "COMPLETED": OrderStatus.COMPLETED,
        "CANCELED": OrderStatus.CANCELED,
        "REJECTED": OrderStatus.FAILED,
    },
    ProviderName.STRIPE: {
        "open": OrderStatus.PENDING,
        "unpaid": OrderStatus.PENDING,
        "paid": OrderStatus.COMPLETED,
        "no_payment_required": OrderStatus.COMPLETED,
        "complete": OrderStatus.COMPLETED,
        "expired": OrderStatus.CANCELED,
        "failed": OrderStatus.FAILED,
    },
}


def map_provider_status(provider: ProviderName, provider_status: str | None) -> OrderStatus | None:
    """Return the local status for a provider string, or None when unknown."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_TABLE.get(provider, {}).get(provider_status)


class TransitionVerdict(str, Enum):
    APPLY = "apply"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    LOCKED = "locked"


@dataclass(frozen=True)
class TransitionDecision:
    verdict: TransitionVerdict
    current: OrderStatus
    reported: OrderStatus

    @property
    def target(self) -> OrderStatus:
        return self.reported if self.verdict is TransitionVerdict.APPLY else self.current


def decide_transition(current: OrderStatus, reported: OrderStatus) -> TransitionDecision:
    """Decide what a reported status does to an order in ``current``.

    Only PENDING may move, and only forward. A terminal status never changes;
    a lower-ranked report against it is OUT_OF_ORDER, any other differing
    report is LOCKED.
    """
    if current is OrderStatus.PENDING:
        verdict = TransitionVerdict.NO_CHANGE if reported is OrderStatus.PENDING else TransitionVerdict.APPLY
    elif reported is current:
        verdict = TransitionVerdict.DUPLICATE
    elif reported.rank < current.rank:
        verdict = TransitionVerdict.OUT_OF_ORDER
    else:
        verdict = TransitionVerdict.LOCKED
    return TransitionDecision(verdict=verdict, current=current, reported=reported)


def next_status(current: OrderStatus, reported: OrderStatus) -> OrderStatus:
    return decide_transition(current, reported).target
