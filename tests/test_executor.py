"""Tests for the transaction executor state machine and retry ladder."""
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import FakeSigner
from lpcruise.finance.executor import ALLOWED_TRANSITIONS, TransactionExecutor
from lpcruise.finance.transactions import (
    AddLiquidity,
    EmergencyExit,
    RemoveLiquidity,
    Swap,
    TargetBin,
    TransactionPriority,
    TransactionStatus,
    TransactionType,
)


def add(pool: str = "pool-a", amount: str = "1") -> AddLiquidity:
    return AddLiquidity(pool_id=pool, amount=Decimal(amount), target_bins=(TargetBin(7, 1.0),))


async def test_successful_request_confirms_and_leaves_table(executor, sender):
    result = await executor.submit("a1", "wallet-1", add())
    assert result.success is True
    assert result.tx_hash == "sig-1"
    assert result.retry_count == 0
    assert executor.get_request(result.request_id) is None
    assert executor.pending_requests() == []


async def test_type_follows_payload(executor):
    request = executor.create_request("a1", "wallet-1", Swap("SOL", "USDC", Decimal("2")))
    assert request.type == TransactionType.SWAP
    assert request.status == TransactionStatus.PENDING


async def test_always_failing_request_uses_full_ladder(executor, sender, sleep, builder):
    sender.always_fail = True
    result = await executor.submit("a1", "wallet-1", add(), max_retries=3)

    assert result.success is False
    assert result.retry_count == 3
    assert result.error == "blockhash not found"
    assert sleep.delays == [5, 15, 30]
    # one initial attempt plus three retries
    assert len(builder.built) == 4
    assert executor.get_request(result.request_id) is None


async def test_recovers_after_transient_failures(executor, sender, sleep):
    sender.failures_left = 2
    result = await executor.submit("a1", "wallet-1", add())
    assert result.success is True
    assert result.retry_count == 2
    assert sleep.delays == [5, 15]


async def test_ladder_repeats_last_delay(executor, sender, sleep):
    sender.always_fail = True
    result = await executor.submit("a1", "wallet-1", add(), max_retries=5)
    assert result.retry_count == 5
    assert sleep.delays == [5, 15, 30, 30, 30]


async def test_zero_retries_fails_immediately(executor, sender, sleep):
    sender.always_fail = True
    result = await executor.submit("a1", "wallet-1", add(), max_retries=0)
    assert result.success is False
    assert result.retry_count == 0
    assert sleep.delays == []


async def test_failed_confirmation_is_retried(executor, sender):
    sender.confirm_ok = False
    result = await executor.submit("a1", "wallet-1", add(), max_retries=1)
    assert result.success is False
    assert "failed on-chain" in result.error


async def test_cancel_pending_request(executor):
    request = executor.create_request("a1", "wallet-1", add())
    assert executor.cancel(request.id) is True
    assert executor.get_status(request.id) is None
    assert executor.cancel(request.id) is False

    result = await executor.execute(request.id)
    assert result.success is False


async def test_cancel_while_waiting_to_retry(executor, sender, sleep):
    sender.always_fail = True
    request = executor.create_request("a1", "wallet-1", add())

    def cancel_during_wait():
        assert executor.get_status(request.id) == TransactionStatus.RETRYING
        assert executor.cancel(request.id) is True

    sleep.hook = cancel_during_wait
    result = await executor.execute(request.id)

    assert result.success is False
    assert "Cancelled" in result.error
    assert sleep.delays == [5]


async def test_task_cancelled_during_backoff_drops_request(builder, sender):
    sender.always_fail = True
    waiting = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        waiting.set()
        await asyncio.Event().wait()

    executor = TransactionExecutor(builder, FakeSigner(), sender, retry_delays=[5], sleep=blocking_sleep)
    request = executor.create_request("a1", "wallet-1", add())
    task = asyncio.create_task(executor.execute(request.id))
    await waiting.wait()
    assert executor.get_status(request.id) == TransactionStatus.RETRYING

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert executor.get_request(request.id) is None
    assert executor.pending_requests() == []


async def test_cannot_cancel_unknown_request(executor):
    assert executor.cancel("nope") is False


@pytest.mark.parametrize(
    "payload, kind",
    [
        (add(), "add_liquidity"),
        (RemoveLiquidity("pool-a", Decimal("1"), bin_range=(1, 9)), "remove_liquidity"),
        (Swap("SOL", "USDC", Decimal("1")), "swap"),
        (EmergencyExit(("pool-a", "pool-b")), "emergency_exit"),
    ],
)
async def test_build_dispatches_on_payload(executor, builder, payload, kind):
    result = await executor.submit("a1", "wallet-1", payload)
    assert result.success is True
    assert builder.built == [(kind, "wallet-1", payload)]


def test_pending_requests_sorted_by_priority(executor):
    low = executor.create_request("a1", "w", add(), priority=TransactionPriority.LOW)
    critical = executor.create_request("a1", "w", add(), priority=TransactionPriority.CRITICAL)
    other = executor.create_request("a2", "w", add(), priority=TransactionPriority.HIGH)

    assert [r.id for r in executor.pending_requests()] == [critical.id, other.id, low.id]
    assert [r.id for r in executor.pending_requests("a1")] == [critical.id, low.id]


def test_terminal_statuses_have_no_exits():
    assert ALLOWED_TRANSITIONS[TransactionStatus.CONFIRMED] == frozenset()
    assert ALLOWED_TRANSITIONS[TransactionStatus.CANCELLED] == frozenset()
    assert ALLOWED_TRANSITIONS[TransactionStatus.FAILED] == frozenset({TransactionStatus.RETRYING})
    assert TransactionStatus.CANCELLED not in ALLOWED_TRANSITIONS[TransactionStatus.SIGNING]
