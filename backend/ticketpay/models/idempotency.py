"""
Idempotency claim: one row per (scope, key).

The row is inserted before the side effect runs. `owner` identifies the
caller holding the claim, `locked_until` bounds how long an unfinished claim
blocks other callers, and `result_id` is filled once the side effect is done.
"""

from sqlalchemy import Column, DateTime, String

from ticketpay.core.clock import utcnow
from ticketpay.db.base import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"

    scope = Column(String(32), primary_key=True)
    key = Column(String(255), primary_key=True)
    fingerprint = Column(String(64), nullable=True)
    owner = Column(String(36), nullable=False)
    locked_until = Column(DateTime(timezone=True), nullable=False)
    result_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<IdempotencyRecord({self.scope}:{self.key} result={self.result_id})>"
