"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .gateway import GatewayOrder, GatewayPayment, GatewayRefund, PaymentGateway

__all__ = ['GatewayOrder', 'GatewayPayment', 'GatewayRefund', 'PaymentGateway']
