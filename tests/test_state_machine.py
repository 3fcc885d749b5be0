"""Unit tests for core payment state-machine guardrails."""

import pytest

from gstpay.common.errors import InvalidState
from gstpay.common.state_machine import (
    ALLOWED_TRANSITIONS,
    PAYMENT_STATUSES,
    can_transition,
    validate_order_payment_transition,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("pending", "completed")
    validate_transition("completed", "refunded")


def test_invalid_transition():
    """Illegal transition must raise to protect payment correctness."""

    with pytest.raises(InvalidState):
        validate_transition("pending", "refunded")


@pytest.mark.parametrize("terminal", ["cancelled", "refunded"])
def test_terminal_states_have_no_exits(terminal):
    for target in PAYMENT_STATUSES:
        assert not can_transition(terminal, target)


def test_completed_never_moves_back_to_failed():
    assert not can_transition("completed", "failed")
    assert not can_transition("refunded", "completed")


def test_failed_can_be_superseded_by_capture():
    assert can_transition("failed", "completed")
    assert not can_transition("failed", "refunded")


def test_every_status_has_a_row():
    assert set(ALLOWED_TRANSITIONS) == set(PAYMENT_STATUSES)


def test_order_payment_status_only_moves_forward():
    validate_order_payment_transition("pending", "paid")
    validate_order_payment_transition("paid", "refunded")
    with pytest.raises(InvalidState):
        validate_order_payment_transition("refunded", "paid")
