"""
Booking model: the unit of payment reconciliation.

Key design decisions:
- `id` is a UUID string generated at hold time and never reused
- Unique `idempotency_key` guarantees one booking per client retry key
- `amount`/`currency` are frozen at hold creation (minor units, never recomputed)
- `version` is the optimistic concurrency token; every state change is an
  UPDATE ... WHERE version = :expected issued by the ledger
- Rows are never deleted; terminal states stay for audit and refund history
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from ticketpay.core.clock import ensure_utc
from ticketpay.db.base import Base, TimestampMixin


class BookingState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"
    FAILED = "failed"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True)
    event_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    ticket_count = Column(Integer, nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    state = Column(String(20), nullable=False, default=BookingState.PENDING.value)

    gateway_order_id = Column(String(64), nullable=False, unique=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    idempotency_key = Column(String(255), nullable=False, unique=True)
    refunded_amount = Column(BigInteger, nullable=True)

    hold_expires_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False, default=1)

    # Reconciliation bookkeeping, not part of the state machine
    reconcile_attempts = Column(Integer, nullable=False, default=0)
    needs_review = Column(Boolean, nullable=False, default=False)

    refunds = relationship(
        "Refund",
        back_populates="booking",
        lazy="selectin",
        order_by="Refund.id",
    )

    __table_args__ = (
        CheckConstraint("ticket_count > 0", name="check_booking_ticket_count_positive"),
        CheckConstraint("amount > 0", name="check_booking_amount_positive"),
        CheckConstraint(
            "state IN ('pending', 'confirmed', 'cancelled', 'refunded', 'expired', 'failed')",
            name="check_booking_state",
        ),
        CheckConstraint(
            "(gateway_payment_id IS NOT NULL) = (state IN ('confirmed', 'refunded'))",
            name="check_booking_payment_id_state",
        ),
        # Reconciliation sweep: pending holds ordered by expiry
        Index("ix_bookings_state_hold_expires", "state", "hold_expires_at"),
    )

    @property
    def booking_state(self) -> BookingState:
        return BookingState(self.state)

    def is_hold_expired(self, now: datetime) -> bool:
        """A pending hold past its deadline is logically expired even before the sweep persists it."""
        return self.state == BookingState.PENDING.value and ensure_utc(now) > ensure_utc(self.hold_expires_at)

    def effective_state(self, now: datetime) -> BookingState:
        if self.is_hold_expired(now):
            return BookingState.EXPIRED
        return BookingState(self.state)

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, event={self.event_id}, state={self.state}, version={self.version})>"
