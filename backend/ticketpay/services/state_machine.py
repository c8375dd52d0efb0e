"""
Booking state graph.

    pending --payment_verified--> confirmed --refund--> refunded
    pending --payment_failed----> failed
    pending --hold_expired------> expired
    pending --cancel------------> cancelled

`pending` is the only non-terminal start state and nothing ever moves back to
it. Cancelling a confirmed booking is a refund, not a cancel. Any pair not in
TRANSITIONS is an InvalidTransition and must be reported, never ignored:
that is how out-of-order or duplicated gateway callbacks surface.

Guards that need data (signatures, order ids, amounts, clocks) live in
BookingService; this module only knows the graph.
"""

from enum import Enum
from typing import Dict, Optional, Set, Tuple

from ticketpay.core.errors import InvalidTransition
from ticketpay.models.booking import BookingState


class BookingTrigger(str, Enum):
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    HOLD_EXPIRED = "hold_expired"
    CANCEL = "cancel"
    REFUND = "refund"


TRANSITIONS: Dict[Tuple[BookingState, BookingTrigger], BookingState] = {
    (BookingState.PENDING, BookingTrigger.PAYMENT_VERIFIED): BookingState.CONFIRMED,
    (BookingState.PENDING, BookingTrigger.PAYMENT_FAILED): BookingState.FAILED,
    (BookingState.PENDING, BookingTrigger.HOLD_EXPIRED): BookingState.EXPIRED,
    (BookingState.PENDING, BookingTrigger.CANCEL): BookingState.CANCELLED,
    (BookingState.CONFIRMED, BookingTrigger.REFUND): BookingState.REFUNDED,
}

TERMINAL_STATES: Set[BookingState] = {
    BookingState.CANCELLED,
    BookingState.REFUNDED,
    BookingState.EXPIRED,
    BookingState.FAILED,
}


def can_transition(current: BookingState, trigger: BookingTrigger) -> bool:
    return (BookingState(current), BookingTrigger(trigger)) in TRANSITIONS


def target_state(
    current: BookingState,
    trigger: BookingTrigger,
    booking_id: Optional[str] = None,
) -> BookingState:
    """Resolve the state `trigger` leads to from `current`, or raise InvalidTransition."""
    current = BookingState(current)
    trigger = BookingTrigger(trigger)
    try:
        return TRANSITIONS[(current, trigger)]
    except KeyError:
        raise InvalidTransition(
            booking_id=booking_id,
            current_state=current.value,
            trigger=trigger.value,
        ) from None


def is_terminal(state: BookingState) -> bool:
    return BookingState(state) in TERMINAL_STATES


def allowed_triggers(state: BookingState) -> Set[BookingTrigger]:
    state = BookingState(state)
    return {trigger for (source, trigger) in TRANSITIONS if source == state}


def is_reachable(source: BookingState, target: BookingState) -> bool:
    """True when some path of transitions leads from `source` to `target`."""
    source, target = BookingState(source), BookingState(target)
    frontier = [source]
    seen = {source}
    while frontier:
        state = frontier.pop()
        for (origin, _), dest in TRANSITIONS.items():
            if origin == state and dest not in seen:
                if dest == target:
                    return True
                seen.add(dest)
                frontier.append(dest)
    return False
