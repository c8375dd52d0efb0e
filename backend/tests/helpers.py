"""
Test doubles and signing helpers shared by the test modules.
"""

import asyncio
import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Optional

from ticketpay.services import signature
from ticketpay.services.interfaces.gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    PaymentGateway,
)

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
TICKET_PRICE = 50000  # 500.00 INR in paise


class FakeClock:
    """Callable clock that only moves when a test tells it to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubGateway(PaymentGateway):
    """In-memory gateway that records every call and can be told to fail."""

    name = "stub"

    def __init__(self):
        self.orders: dict[str, GatewayOrder] = {}
        self.payments: dict[str, list[GatewayPayment]] = {}
        self.refunds: list[GatewayRefund] = []
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _record(self, operation: str) -> None:
        self.calls.append(operation)
        error = self.failures.get(operation)
        if error is not None:
            raise error

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    async def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        self._record("create_order")
        # Let concurrent callers interleave like a real network call would.
        await asyncio.sleep(0)
        order = GatewayOrder(
            order_id=f"order_{next(self._ids)}",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )
        self.orders[order.order_id] = order
        return order

    async def fetch_payments(self, order_id) -> list[GatewayPayment]:
        self._record("fetch_payments")
        return list(self.payments.get(order_id, []))

    async def refund(self, payment_id, amount=None, notes=None) -> GatewayRefund:
        self._record("refund")
        payment = next(
            p for payments in self.payments.values() for p in payments if p.payment_id == payment_id
        )
        refund = GatewayRefund(
            refund_id=f"rfnd_{next(self._ids)}",
            payment_id=payment_id,
            amount=payment.amount if amount is None else amount,
            status="processed",
            notes=dict(notes or {}),
        )
        self.refunds.append(refund)
        return refund

    async def close(self) -> None:
        pass

    def pay(self, order_id: str, status: str = "captured", amount: Optional[int] = None) -> GatewayPayment:
        """Simulate the customer paying an order."""
        order = self.orders[order_id]
        payment = GatewayPayment(
            payment_id=f"pay_{next(self._ids)}",
            order_id=order_id,
            amount=order.amount if amount is None else amount,
            currency=order.currency,
            status=status,
        )
        self.payments.setdefault(order_id, []).append(payment)
        return payment


def sign_payment(order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    return signature.compute_signature(signature.payment_payload(order_id, payment_id), secret)


def webhook_body(event_type: str, entity_name: str, entity: dict) -> bytes:
    return json.dumps(
        {
            "entity": "event",
            "account_id": "acc_test",
            "event": event_type,
            "contains": [entity_name],
            "payload": {entity_name: {"entity": entity}},
            "created_at": 1772366400,
        }
    ).encode()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return signature.compute_signature(body, secret)


def captured_body(payment: GatewayPayment) -> bytes:
    return webhook_body(
        "payment.captured",
        "payment",
        {
            "id": payment.payment_id,
            "order_id": payment.order_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "status": "captured",
        },
    )
