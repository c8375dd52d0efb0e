"""
Payment gateway factory.
Builds the configured PaymentGateway once per process.
"""

from typing import Optional

from ticketpay.core.config import get_settings
from ticketpay.services.interfaces.gateway import PaymentGateway
from ticketpay.services.razorpay_gateway import RazorpayGateway


def build_gateway() -> PaymentGateway:
    settings = get_settings()
    return RazorpayGateway(
        settings.RAZORPAY_KEY_ID,
        settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_API_BASE,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
    )


# Singleton instance
_gateway: Optional[PaymentGateway] = None

def get_gateway() -> PaymentGateway:
    """Get payment gateway singleton."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway()
    return _gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
