"""
Event model, owned by the catalog side of the system.

This service only reads it: existence checks and the authoritative ticket
price at hold time. `ticket_price` is in minor units (paise/cents).
"""

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, Index, Integer, String

from ticketpay.db.base import Base, TimestampMixin


class Event(Base, TimestampMixin):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(255), nullable=True)
    ticket_price = Column(BigInteger, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")

    __table_args__ = (
        CheckConstraint("ticket_price >= 0", name="check_ticket_price_non_negative"),
        Index("ix_events_date", "date"),
    )

    def __repr__(self) -> str:
        return f"<Event(id={self.id}, title={self.title}, price={self.ticket_price} {self.currency})>"
