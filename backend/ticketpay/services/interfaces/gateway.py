"""
Payment gateway port.
The booking core talks to the payment provider only through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Mapping, Optional


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount: int
    currency: str
    receipt: str
    status: str = "created"


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    order_id: str
    amount: int
    currency: str
    status: str  # created, authorized, captured, refunded, failed

    @property
    def is_captured(self) -> bool:
        return self.status in ("captured", "refunded")


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    payment_id: str
    amount: int
    status: str
    notes: Mapping[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    """
    Interface for payment providers.

    Implementations:
    - RazorpayGateway: Razorpay Orders/Payments REST API over httpx

    All amounts are integral minor units. Implementations raise
    GatewayUnavailable after exhausting their own retries and GatewayRejected
    when the provider refuses a request outright.
    """

    name: str = "gateway"

    @abstractmethod
    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create an order the client will pay against.

        Args:
            amount: Amount in minor units, exactly the booking's amount
            currency: ISO currency code
            receipt: Our reference for the order (the booking id)
            notes: Free-form key/value metadata stored with the order

        Returns:
            The created order
        """
        pass

    @abstractmethod
    async def fetch_payments(self, order_id: str) -> list[GatewayPayment]:
        """
        List payment attempts made against an order.

        Args:
            order_id: Gateway order id
        """
        pass

    @abstractmethod
    async def refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        """
        Refund a captured payment, fully when `amount` is None.

        Args:
            payment_id: Gateway payment id
            amount: Partial refund amount in minor units
            notes: Free-form key/value metadata (e.g. the reason)
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
