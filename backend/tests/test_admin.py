"""
Tests for the operator booking overview.
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient

from tests.helpers import TICKET_PRICE, sign_payment


@pytest_asyncio.fixture
async def mixed_bookings(booking_service, gateway, clock, test_user, test_event, hold):
    """One pending hold, one cancelled hold and one partially refunded booking, a minute apart."""
    clock.advance(minutes=1)
    cancelled = (await booking_service.create_hold(test_event.id, test_user.id, 1, "admin-cancel")).booking
    await booking_service.cancel(cancelled.id)

    clock.advance(minutes=1)
    paid = (await booking_service.create_hold(test_event.id, test_user.id, 1, "admin-paid")).booking
    payment = gateway.pay(paid.gateway_order_id)
    await booking_service.verify_payment(
        paid.id,
        paid.gateway_order_id,
        payment.payment_id,
        sign_payment(paid.gateway_order_id, payment.payment_id),
    )
    await booking_service.refund(paid.id, amount=20000)

    return {"pending": hold, "cancelled": cancelled, "refunded": paid}


@pytest.mark.asyncio
async def test_list_all_bookings_newest_first(client: AsyncClient, mixed_bookings):
    response = await client.get("/api/v1/admin/bookings")
    assert response.status_code == 200

    data = response.json()
    assert data["total"] == 3
    assert data["page"] == 1
    assert [b["id"] for b in data["bookings"]] == [
        mixed_bookings["refunded"].id,
        mixed_bookings["cancelled"].id,
        mixed_bookings["pending"].id,
    ]


@pytest.mark.asyncio
async def test_list_bookings_by_state(client: AsyncClient, mixed_bookings):
    response = await client.get("/api/v1/admin/bookings", params={"state": "cancelled"})
    assert response.status_code == 200

    data = response.json()
    assert data["total"] == 1
    assert [b["id"] for b in data["bookings"]] == [mixed_bookings["cancelled"].id]


@pytest.mark.asyncio
async def test_list_bookings_pages(client: AsyncClient, mixed_bookings):
    response = await client.get("/api/v1/admin/bookings", params={"page": 2, "page_size": 2})
    data = response.json()

    assert data["total"] == 3
    assert [b["id"] for b in data["bookings"]] == [mixed_bookings["pending"].id]


@pytest.mark.asyncio
async def test_list_bookings_unknown_state(client: AsyncClient):
    response = await client.get("/api/v1/admin/bookings", params={"state": "archived"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_lapsed_hold_listed_as_pending_until_swept(client: AsyncClient, clock, hold):
    clock.advance(minutes=16)

    response = await client.get("/api/v1/admin/bookings", params={"state": "pending"})
    [booking] = response.json()["bookings"]
    assert booking["state"] == "pending"
    assert booking["effective_state"] == "expired"


@pytest.mark.asyncio
async def test_booking_stats(client: AsyncClient, mixed_bookings):
    response = await client.get("/api/v1/admin/stats")
    assert response.status_code == 200

    stats = response.json()
    assert stats["total_bookings"] == 3
    assert stats["by_state"] == {"pending": 1, "cancelled": 1, "refunded": 1}
    assert stats["captured_amount"] == TICKET_PRICE
    assert stats["refunded_amount"] == 20000
    assert stats["net_amount"] == TICKET_PRICE - 20000
    assert stats["needs_review"] == 0


@pytest.mark.asyncio
async def test_booking_stats_empty(client: AsyncClient):
    response = await client.get("/api/v1/admin/stats")
    stats = response.json()

    assert stats["total_bookings"] == 0
    assert stats["by_state"] == {}
    assert stats["net_amount"] == 0
