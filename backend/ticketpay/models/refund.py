"""
Refund record attached to a booking when it moves into `refunded`.

Partial refunds are expressed through `amount`; there is no separate state.
"""

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from ticketpay.core.clock import utcnow
from ticketpay.db.base import Base


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    gateway_refund_id = Column(String(64), nullable=False, unique=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(String(32), nullable=False)
    reason = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    booking = relationship("Booking", back_populates="refunds")

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_refund_amount_positive"),
    )

    def __repr__(self) -> str:
        return f"<Refund(id={self.gateway_refund_id}, booking={self.booking_id}, amount={self.amount})>"
