"""
Tests for the booking state graph.
"""

import pytest

from ticketpay.core.errors import InvalidTransition
from ticketpay.models.booking import BookingState
from ticketpay.services.state_machine import (
    TERMINAL_STATES,
    TRANSITIONS,
    BookingTrigger,
    allowed_triggers,
    can_transition,
    is_reachable,
    is_terminal,
    target_state,
)


@pytest.mark.parametrize(
    "current, trigger, expected",
    [
        (BookingState.PENDING, BookingTrigger.PAYMENT_VERIFIED, BookingState.CONFIRMED),
        (BookingState.PENDING, BookingTrigger.PAYMENT_FAILED, BookingState.FAILED),
        (BookingState.PENDING, BookingTrigger.HOLD_EXPIRED, BookingState.EXPIRED),
        (BookingState.PENDING, BookingTrigger.CANCEL, BookingState.CANCELLED),
        (BookingState.CONFIRMED, BookingTrigger.REFUND, BookingState.REFUNDED),
    ],
)
def test_allowed_transitions(current, trigger, expected):
    assert target_state(current, trigger) == expected


def test_every_other_pair_is_rejected():
    for state in BookingState:
        for trigger in BookingTrigger:
            if (state, trigger) in TRANSITIONS:
                continue
            with pytest.raises(InvalidTransition) as exc_info:
                target_state(state, trigger, booking_id="b-1")
            assert exc_info.value.current_state == state.value
            assert exc_info.value.trigger == trigger.value
            assert exc_info.value.booking_id == "b-1"


def test_accepts_plain_strings():
    assert target_state("pending", "payment_verified") == BookingState.CONFIRMED
    assert can_transition("confirmed", "refund")
    assert not can_transition("confirmed", "cancel")


def test_confirmed_booking_cannot_be_cancelled():
    """A paid booking leaves only through a refund."""
    assert allowed_triggers(BookingState.CONFIRMED) == {BookingTrigger.REFUND}


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert is_terminal(state)
        assert allowed_triggers(state) == set()
    assert not is_terminal(BookingState.PENDING)
    assert not is_terminal(BookingState.CONFIRMED)


def test_nothing_returns_to_pending():
    for state in BookingState:
        assert not is_reachable(state, BookingState.PENDING)


def test_refunded_reachable_only_through_confirmed():
    assert is_reachable(BookingState.PENDING, BookingState.REFUNDED)
    assert is_reachable(BookingState.CONFIRMED, BookingState.REFUNDED)
    assert not is_reachable(BookingState.EXPIRED, BookingState.REFUNDED)
    assert not is_reachable(BookingState.FAILED, BookingState.CONFIRMED)


def test_invalid_transition_message_names_state_and_trigger():
    with pytest.raises(InvalidTransition) as exc_info:
        target_state(BookingState.EXPIRED, BookingTrigger.PAYMENT_VERIFIED)
    assert "payment_verified" in exc_info.value.message
    assert "expired" in exc_info.value.message
    assert exc_info.value.status_code == 409
