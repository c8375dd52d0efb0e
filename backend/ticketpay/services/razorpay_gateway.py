"""
Razorpay adapter for the PaymentGateway port.

Talks to the Razorpay REST API with httpx using HTTP basic auth
(key id / key secret). Transport errors, 429 and 5xx answers are retried with
exponential backoff; once the attempts are exhausted the caller gets
GatewayUnavailable. Any other 4xx, and any 2xx whose body is not the entity
we asked for, is GatewayRejected. Provider error bodies are logged but never
propagated to API clients.
"""

import time
from typing import Any, Callable, Mapping, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ticketpay.core.errors import GatewayRejected, GatewayUnavailable
from ticketpay.core.logging import get_logger
from ticketpay.core.metrics import record_gateway_call
from ticketpay.services.interfaces.gateway import (
    GatewayOrder,
    GatewayPayment,
    GatewayRefund,
    PaymentGateway,
)

logger = get_logger(__name__)

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

T = TypeVar("T")


class _RetryableGatewayError(Exception):
    pass


def _string_notes(notes: Optional[Mapping[str, Any]]) -> dict[str, str]:
    # Razorpay only accepts string values in `notes`.
    return {str(key): str(value) for key, value in (notes or {}).items()}


def _order(data: dict, receipt: str) -> GatewayOrder:
    return GatewayOrder(
        order_id=data["id"],
        amount=int(data["amount"]),
        currency=data["currency"],
        receipt=data.get("receipt", receipt),
        status=data.get("status", "created"),
    )


def _payments(data: dict, order_id: str) -> list[GatewayPayment]:
    return [
        GatewayPayment(
            payment_id=item["id"],
            order_id=item.get("order_id", order_id),
            amount=int(item["amount"]),
            currency=item.get("currency", ""),
            status=item.get("status", ""),
        )
        for item in data.get("items", [])
    ]


def _refund(data: dict, payment_id: str) -> GatewayRefund:
    return GatewayRefund(
        refund_id=data["id"],
        payment_id=data.get("payment_id", payment_id),
        amount=int(data["amount"]),
        status=data.get("status", "pending"),
        notes=data.get("notes") or {},
    )


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
        )
        self._max_attempts = max_attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayOrder:
        return await self._request(
            "create_order",
            "POST",
            "/orders",
            lambda data: _order(data, receipt),
            json={
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "notes": _string_notes(notes),
            },
        )

    async def fetch_payments(self, order_id: str) -> list[GatewayPayment]:
        return await self._request(
            "fetch_payments",
            "GET",
            f"/orders/{order_id}/payments",
            lambda data: _payments(data, order_id),
        )

    async def refund(
        self,
        payment_id: str,
        amount: Optional[int] = None,
        notes: Optional[Mapping[str, str]] = None,
    ) -> GatewayRefund:
        body: dict[str, Any] = {"speed": "normal", "notes": _string_notes(notes)}
        if amount is not None:
            body["amount"] = amount

        return await self._request(
            "refund",
            "POST",
            f"/payments/{payment_id}/refund",
            lambda data: _refund(data, payment_id),
            json=body,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        decode: Callable[[dict], T],
        json: Optional[dict] = None,
    ) -> T:
        start = time.perf_counter()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff_min, max=self._backoff_max),
            retry=retry_if_exception_type(_RetryableGatewayError),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._send(operation, method, path, json)
        except _RetryableGatewayError as exc:
            record_gateway_call(operation, "unavailable", time.perf_counter() - start)
            logger.error(
                "gateway_unavailable",
                operation=operation,
                attempts=self._max_attempts,
                error=str(exc),
            )
            raise GatewayUnavailable() from exc

        if response.status_code >= 400:
            record_gateway_call(operation, "rejected", time.perf_counter() - start)
            logger.warning(
                "gateway_rejected",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayRejected()

        try:
            result = decode(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            # Never retried: the request may already have taken effect.
            record_gateway_call(operation, "malformed", time.perf_counter() - start)
            logger.error(
                "gateway_malformed_response",
                operation=operation,
                status_code=response.status_code,
                error=f"{type(exc).__name__}: {exc}",
                body=response.text[:500],
            )
            raise GatewayRejected() from exc

        record_gateway_call(operation, "success", time.perf_counter() - start)
        return result

    async def _send(self, operation: str, method: str, path: str, json: Optional[dict]) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TransportError as exc:
            logger.warning("gateway_transport_error", operation=operation, error=type(exc).__name__)
            raise _RetryableGatewayError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code in RETRYABLE_STATUS:
            logger.warning("gateway_retryable_status", operation=operation, status_code=response.status_code)
            raise _RetryableGatewayError(f"HTTP {response.status_code}")
        return response
