from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    """Status of a payment order."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        """Severity used to reject out-of-order deliveries."""

        ranks = {
            OrderStatus.PENDING: 0,
            OrderStatus.FAILED: 1,
            OrderStatus.CANCELED: 2,
            OrderStatus.COMPLETED: 3,
        }
        return ranks[self]

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class SubscriptionStatus(str, Enum):
    """Status of a user subscription."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    FAILED = "failed"
