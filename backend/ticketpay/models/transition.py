"""
Append-only audit trail of booking state transitions.

Written in the same transaction as the compare-and-swap that produced it, so
the sequence of rows per booking is exactly the path the booking took
through the state graph.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from ticketpay.core.clock import utcnow
from ticketpay.db.base import Base


class BookingTransition(Base):
    __tablename__ = "booking_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    from_state = Column(String(20), nullable=False)
    to_state = Column(String(20), nullable=False)
    trigger = Column(String(32), nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BookingTransition({self.booking_id}: {self.from_state}->{self.to_state} v{self.version})>"
