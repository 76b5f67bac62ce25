"""Tests for the generation gate: check first, charge only for delivered items."""

from __future__ import annotations

import asyncio

import pytest

from postora.services.generation_gate import (
    GenerationCreditsRequired,
    GenerationGate,
)
from postora.services.ledger_store import TransactionType

USER = "user_gen_1"


@pytest.fixture
def gate(credits):
    return GenerationGate(credits)


def _counters(account):
    return (
        account.available_credits,
        account.total_credits_received,
        account.credits_used,
    )


# ---------------------------------------------------------------------------
# Partial success
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_charges_only_successful_generations(credits, gate):
    await credits.ensure_account(USER, 10)

    async def work(count):
        assert count == 4
        return 3

    successful, account = await gate.run(USER, 4, work, request_id="req-1")

    assert successful == 3
    assert _counters(account) == (7, 10, 3)

    charge = (await credits.get_history(USER, limit=1))[0]
    assert charge.amount == -3
    assert charge.transaction_type is TransactionType.IMAGE_GENERATION
    assert charge.metadata["request_id"] == "req-1"
    assert charge.metadata["requested_count"] == 4
    assert charge.metadata["successful_count"] == 3
    assert charge.metadata["success_rate"] == "3/4"


@pytest.mark.asyncio
async def test_zero_successes_are_free(credits, gate):
    await credits.ensure_account(USER, 10)

    ticket = await gate.reserve(USER, 2)
    account = await gate.finalize(ticket, 0)

    assert account is None
    assert _counters(await credits.get_balance(USER)) == (10, 10, 0)
    assert len(await credits.get_history(USER)) == 1


@pytest.mark.asyncio
async def test_social_post_reason_is_recorded(credits, gate):
    await credits.ensure_account(USER, 5)

    ticket = await gate.reserve(USER, 1, reason="social_post_generation")
    await gate.finalize(ticket, 1, {"platform": "instagram"})

    charge = (await credits.get_history(USER, limit=1))[0]
    assert charge.transaction_type is TransactionType.SOCIAL_POST_GENERATION
    assert charge.metadata["platform"] == "instagram"


# ---------------------------------------------------------------------------
# Insufficient balance
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reserve_reports_shortfall(credits, gate):
    await credits.ensure_account(USER, 3)
    called = False

    async def work(count):
        nonlocal called
        called = True
        return count

    with pytest.raises(GenerationCreditsRequired) as exc_info:
        await gate.run(USER, 5, work)

    assert called is False
    assert exc_info.value.required == 5
    assert exc_info.value.available == 3
    assert exc_info.value.shortfall == 2
    assert "2 more credits" in str(exc_info.value)


@pytest.mark.asyncio
async def test_reserve_without_account(gate):
    with pytest.raises(GenerationCreditsRequired) as exc_info:
        await gate.reserve("nobody", 1)

    assert exc_info.value.available == 0


@pytest.mark.asyncio
async def test_seed_credits_create_first_account(credits):
    gate = GenerationGate(credits, seed_credits=3)

    ticket = await gate.reserve("newcomer", 2)
    account = await gate.finalize(ticket, 2)

    assert _counters(account) == (1, 3, 2)


@pytest.mark.asyncio
async def test_balance_drained_between_reserve_and_finalize(credits, gate):
    await credits.ensure_account(USER, 4)
    ticket = await gate.reserve(USER, 4)

    # A concurrent request spends most of the balance meanwhile
    await credits.deduct(USER, 3, "image_generation")

    with pytest.raises(GenerationCreditsRequired) as exc_info:
        await gate.finalize(ticket, 4)

    assert exc_info.value.shortfall == 3
    assert (await credits.get_balance(USER)).available_credits == 1


# ---------------------------------------------------------------------------
# Failure and retry handling
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failed_work_is_not_charged(credits, gate):
    await credits.ensure_account(USER, 5)

    async def work(count):
        raise RuntimeError("image provider unavailable")

    with pytest.raises(RuntimeError):
        await gate.run(USER, 2, work)

    assert _counters(await credits.get_balance(USER)) == (5, 5, 0)


@pytest.mark.asyncio
async def test_cancelled_work_is_not_charged(credits, gate):
    await credits.ensure_account(USER, 5)
    started = asyncio.Event()

    async def work(count):
        started.set()
        await asyncio.sleep(10)
        return count

    task = asyncio.create_task(gate.run(USER, 2, work))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert _counters(await credits.get_balance(USER)) == (5, 5, 0)


@pytest.mark.asyncio
async def test_repeated_finalize_charges_once(credits, gate):
    await credits.ensure_account(USER, 10)
    ticket = await gate.reserve(USER, 3, request_id="req-retry")

    first = await gate.finalize(ticket, 3)
    second = await gate.finalize(ticket, 3)

    assert first.available_credits == 7
    assert second.available_credits == 7
    assert len(await credits.get_history(USER)) == 2


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("requested", [0, -1])
async def test_reserve_rejects_non_positive_counts(gate, requested):
    with pytest.raises(ValueError):
        await gate.reserve(USER, requested)


@pytest.mark.asyncio
async def test_reserve_rejects_non_generation_reason(gate):
    with pytest.raises(ValueError):
        await gate.reserve(USER, 1, reason=TransactionType.PURCHASE)


@pytest.mark.asyncio
async def test_finalize_rejects_more_successes_than_requested(credits, gate):
    await credits.ensure_account(USER, 10)
    ticket = await gate.reserve(USER, 2)

    with pytest.raises(ValueError):
        await gate.finalize(ticket, 3)
    with pytest.raises(ValueError):
        await gate.finalize(ticket, -1)
