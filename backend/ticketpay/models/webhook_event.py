"""
Inbound gateway callback, stored before any state change is attempted.

- `gateway_event_id` is the dedup key (Razorpay's X-Razorpay-Event-Id)
- `raw_payload` keeps the exact bytes so the worker can replay processing
- `payload_hash` detects a redelivery that reuses the id with a different body
- Once `processed_at` is set the row is immutable and reprocessing is a no-op
"""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, LargeBinary, String

from ticketpay.core.clock import utcnow
from ticketpay.db.base import Base

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
REFUND_CREATED = "refund.created"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    gateway_event_id = Column(String(64), primary_key=True)
    event_type = Column(String(64), nullable=False)
    raw_payload = Column(LargeBinary, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    payload_mismatch = Column(Boolean, nullable=False, default=False)

    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_result = Column(String(20), nullable=True)  # applied, noop, rejected, ignored
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(255), nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        # Replay scan: unprocessed events by age
        Index("ix_webhook_events_unprocessed", "processed_at", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(id={self.gateway_event_id}, type={self.event_type}, processed={self.processed_at})>"
