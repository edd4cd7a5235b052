from __future__ import annotations

import itertools
import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.domain.enums import ProviderName
from payrecon.domain.statuses import OrderStatus
from payrecon.services.transitions import (
    TransitionVerdict,
    decide_transition,
    map_provider_status,
    next_status,
)

TERMINAL = [OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.FAILED]


@pytest.mark.parametrize(
    "provider,raw,expected",
    [
        (ProviderName.PAYU, "NEW", OrderStatus.PENDING),
        (ProviderName.PAYU, "WAITING_FOR_CONFIRMATION", OrderStatus.PENDING),
        (ProviderName.PAYU, "COMPLETED", OrderStatus.COMPLETED),
        (ProviderName.PAYU, "CANCELED", OrderStatus.CANCELED),
        (ProviderName.PAYU, "REJECTED", OrderStatus.FAILED),
        (ProviderName.STRIPE, "paid", OrderStatus.COMPLETED),
        (ProviderName.STRIPE, "no_payment_required", OrderStatus.COMPLETED),
        (ProviderName.STRIPE, "unpaid", OrderStatus.PENDING),
        (ProviderName.STRIPE, "expired", OrderStatus.CANCELED),
    ],
)
def test_provider_status_table(provider: ProviderName, raw: str, expected: OrderStatus) -> None:
    assert map_provider_status(provider, raw) is expected


def test_unknown_provider_status_is_none() -> None:
    assert map_provider_status(ProviderName.PAYU, "REFUNDED") is None
    assert map_provider_status(ProviderName.PAYU, "completed") is None
    assert map_provider_status(ProviderName.STRIPE, "") is None


def test_pending_moves_to_any_terminal() -> None:
    for reported in TERMINAL:
        decision = decide_transition(OrderStatus.PENDING, reported)
        assert decision.verdict is TransitionVerdict.APPLY
        assert decision.target is reported


def test_pending_report_on_pending_is_no_change() -> None:
    decision = decide_transition(OrderStatus.PENDING, OrderStatus.PENDING)
    assert decision.verdict is TransitionVerdict.NO_CHANGE


def test_same_terminal_is_duplicate() -> None:
    assert decide_transition(OrderStatus.COMPLETED, OrderStatus.COMPLETED).verdict is TransitionVerdict.DUPLICATE


def test_canceled_after_completed_is_out_of_order() -> None:
    decision = decide_transition(OrderStatus.COMPLETED, OrderStatus.CANCELED)
    assert decision.verdict is TransitionVerdict.OUT_OF_ORDER
    assert decision.target is OrderStatus.COMPLETED


def test_higher_rank_against_terminal_is_locked() -> None:
    decision = decide_transition(OrderStatus.FAILED, OrderStatus.COMPLETED)
    assert decision.verdict is TransitionVerdict.LOCKED
    assert decision.target is OrderStatus.FAILED


def test_terminal_states_are_fixed_points() -> None:
    for current, reported in itertools.product(TERMINAL, list(OrderStatus)):
        assert next_status(current, reported) is current


def test_status_never_regresses_along_any_event_sequence() -> None:
    for events in itertools.product(list(OrderStatus), repeat=3):
        state = OrderStatus.PENDING
        for reported in events:
            new_state = next_status(state, reported)
            if state.is_terminal:
                assert new_state is state
            state = new_state
