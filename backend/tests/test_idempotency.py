"""
Tests for the idempotency guard.
"""

import asyncio

import pytest

from ticketpay.core.errors import RequestInProgress
from ticketpay.services.idempotency import HOLD_SCOPE, REFUND_SCOPE, IdempotencyGuard


@pytest.mark.asyncio
async def test_first_caller_wins(guard):
    claim = await guard.acquire(HOLD_SCOPE, "k1", "fp")
    assert claim.is_new
    assert claim.owner is not None

    second = await guard.acquire(HOLD_SCOPE, "k1", "fp")
    assert not second.is_new
    assert second.result_id is None
    assert second.fingerprint == "fp"


@pytest.mark.asyncio
async def test_completed_claim_returns_result(guard):
    claim = await guard.acquire(HOLD_SCOPE, "k1")
    assert await guard.complete(claim, "booking-1")

    replay = await guard.acquire(HOLD_SCOPE, "k1")
    assert not replay.is_new
    assert replay.result_id == "booking-1"


@pytest.mark.asyncio
async def test_scopes_are_independent(guard):
    assert (await guard.acquire(HOLD_SCOPE, "same")).is_new
    assert (await guard.acquire(REFUND_SCOPE, "same")).is_new


@pytest.mark.asyncio
async def test_concurrent_acquire_single_winner(guard):
    claims = await asyncio.gather(*(guard.acquire(HOLD_SCOPE, "race") for _ in range(8)))
    assert sum(1 for claim in claims if claim.is_new) == 1


@pytest.mark.asyncio
async def test_release_lets_a_retry_start_over(guard):
    claim = await guard.acquire(HOLD_SCOPE, "k1")
    await guard.release(claim)
    assert (await guard.acquire(HOLD_SCOPE, "k1")).is_new


@pytest.mark.asyncio
async def test_wait_for_result_sees_completion(guard):
    claim = await guard.acquire(HOLD_SCOPE, "k1")

    async def finish():
        await asyncio.sleep(0.05)
        await guard.complete(claim, "booking-9")

    result, _ = await asyncio.gather(guard.wait_for_result(HOLD_SCOPE, "k1"), finish())
    assert result == "booking-9"


@pytest.mark.asyncio
async def test_wait_for_result_times_out(session_factory, clock):
    guard = IdempotencyGuard(session_factory, wait_seconds=0.1, poll_interval=0.01, clock=clock)
    await guard.acquire(HOLD_SCOPE, "slow")
    with pytest.raises(RequestInProgress):
        await guard.wait_for_result(HOLD_SCOPE, "slow")


@pytest.mark.asyncio
async def test_wait_for_result_after_release(guard):
    claim = await guard.acquire(HOLD_SCOPE, "k1")
    await guard.release(claim)
    with pytest.raises(RequestInProgress):
        await guard.wait_for_result(HOLD_SCOPE, "k1")


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over_once(guard, clock):
    stale = await guard.acquire(HOLD_SCOPE, "crashed")
    clock.advance(seconds=120)

    takeover = await guard.acquire(HOLD_SCOPE, "crashed")
    assert takeover.is_new
    assert takeover.owner != stale.owner

    # The crashed owner can no longer complete or release the claim.
    assert not await guard.complete(stale, "ghost")
    await guard.release(stale)

    assert not (await guard.acquire(HOLD_SCOPE, "crashed")).is_new
    assert await guard.complete(takeover, "booking-2")
    assert (await guard.acquire(HOLD_SCOPE, "crashed")).result_id == "booking-2"
