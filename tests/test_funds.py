"""Tests for funds caching, limit checks, ledger and returns."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import make_config
from lpcruise.core.types import Position, utcnow
from lpcruise.finance.funds import FundsManager, LedgerType, _local_midnight


@pytest.fixture
def agent(funds, chain):
    """Agent with 1 free + 9 in positions = 10 total."""
    chain.balances["wallet-1"] = Decimal("1")
    chain.positions["wallet-1"] = [
        Position("pool-a", Decimal("4")),
        Position("pool-b", Decimal("5")),
    ]
    funds.register_agent("a1", make_config(min_balance=Decimal("0.1"), max_positions=5))
    return "a1"


async def test_snapshot_total_is_balance_plus_positions(funds, agent):
    status = await funds.get_funds_status(agent)
    assert status.total_value == Decimal("10")
    assert status.available_balance == Decimal("1")
    assert status.pool_ids == {"pool-a", "pool-b"}


async def test_snapshot_is_cached_until_forced_or_invalidated(funds, chain, agent):
    await funds.get_funds_status(agent)
    await funds.get_funds_status(agent)
    assert chain.balance_calls == 1

    await funds.get_funds_status(agent, force_refresh=True)
    assert chain.balance_calls == 2

    funds.invalidate(agent)
    await funds.get_funds_status(agent)
    assert chain.balance_calls == 3


async def test_partial_update_recomputes_total(funds, agent):
    await funds.get_funds_status(agent)
    status = await funds.update_funds_status(agent, available_balance=Decimal("3"))
    assert status.total_value == Decimal("12")

    status = await funds.update_funds_status(agent, positions=[Position("pool-c", Decimal("1"))])
    assert status.total_value == Decimal("4")
    assert status.available_balance == Decimal("3")


async def test_single_transaction_cap(funds, agent):
    assert await funds.check_transaction_limit(agent, Decimal("3"), LedgerType.REMOVE_LIQUIDITY)
    assert not await funds.check_transaction_limit(agent, Decimal("3.01"), LedgerType.REMOVE_LIQUIDITY)


async def test_daily_cap_counts_todays_volume(funds, agent):
    funds.record_transaction(agent, Decimal("3"), LedgerType.REMOVE_LIQUIDITY)
    funds.record_transaction(agent, Decimal("3"), LedgerType.SWAP)
    # 6 today; cap is 7
    assert await funds.check_transaction_limit(agent, Decimal("1"), LedgerType.REMOVE_LIQUIDITY)
    assert not await funds.check_transaction_limit(agent, Decimal("1.5"), LedgerType.REMOVE_LIQUIDITY)


async def test_daily_cap_ignores_fees_deposits_and_yesterday(funds, agent):
    funds.record_transaction(agent, Decimal("50"), LedgerType.FEE)
    funds.record_transaction(agent, Decimal("50"), LedgerType.DEPOSIT)
    funds.record_transaction(
        agent, Decimal("6"), LedgerType.SWAP, timestamp=_local_midnight() - timedelta(hours=1)
    )
    assert await funds.check_transaction_limit(agent, Decimal("3"), LedgerType.REMOVE_LIQUIDITY)


async def test_outflow_must_leave_minimum_balance(funds, agent):
    assert not await funds.check_transaction_limit(agent, Decimal("0.95"), LedgerType.WITHDRAW)
    assert not await funds.check_transaction_limit(agent, Decimal("0.95"), LedgerType.ADD_LIQUIDITY)
    assert await funds.check_transaction_limit(agent, Decimal("0.95"), LedgerType.REMOVE_LIQUIDITY)
    assert await funds.check_transaction_limit(agent, Decimal("0.9"), LedgerType.SWAP)


async def test_add_liquidity_respects_max_positions(funds, chain):
    chain.balances["wallet-2"] = Decimal("10")
    chain.positions["wallet-2"] = [Position(f"pool-{i}", Decimal("1")) for i in range(2)]
    funds.register_agent("a2", make_config(wallet_id="wallet-2", max_positions=2))
    assert not await funds.check_transaction_limit("a2", Decimal("1"), LedgerType.ADD_LIQUIDITY)
    assert await funds.check_transaction_limit("a2", Decimal("1"), LedgerType.SWAP)


async def test_limit_check_denies_instead_of_raising(funds, chain, agent):
    assert not await funds.check_transaction_limit("ghost", Decimal("1"), LedgerType.SWAP)
    chain.fail = True
    assert not await funds.check_transaction_limit(agent, Decimal("0.1"), LedgerType.SWAP)


async def test_ledger_is_bounded(chain):
    manager = FundsManager(chain, ledger_size=3)
    manager.register_agent("a1", make_config())
    for i in range(5):
        manager.record_transaction("a1", Decimal(i), LedgerType.SWAP)
    assert [e.amount for e in manager.get_ledger("a1")] == [Decimal(2), Decimal(3), Decimal(4)]


async def test_deposit_raises_initial_investment(funds, agent):
    funds.set_initial_investment(agent, Decimal("5"))
    funds.record_transaction(agent, Decimal("3"), LedgerType.DEPOSIT)
    assert funds.get_initial_investment(agent) == Decimal("8")


async def test_returns_from_fees(funds, agent):
    funds.set_initial_investment(agent, Decimal("8"))
    funds.record_transaction(agent, Decimal("0.1"), LedgerType.FEE)
    funds.record_transaction(agent, Decimal("0.2"), LedgerType.FEE, timestamp=utcnow() - timedelta(days=3))
    funds.record_transaction(agent, Decimal("0.4"), LedgerType.FEE, timestamp=utcnow() - timedelta(days=20))

    returns = await funds.calculate_returns(agent)
    assert returns.total == pytest.approx(0.25)
    assert returns.daily == pytest.approx(0.01)
    assert returns.weekly == pytest.approx(0.03)
    assert returns.monthly == pytest.approx(0.07)


async def test_first_snapshot_sets_initial_investment(funds, chain, agent):
    await funds.get_funds_status(agent)
    assert funds.get_initial_investment(agent) == Decimal("10")

    chain.balances["wallet-1"] = Decimal("3")
    await funds.get_funds_status(agent, force_refresh=True)
    assert funds.get_initial_investment(agent) == Decimal("10")

    returns = await funds.calculate_returns(agent)
    assert returns.total == pytest.approx(0.2)


async def test_returns_are_zero_for_empty_wallet(funds):
    funds.register_agent("a2", make_config(wallet_id="empty"))
    returns = await funds.calculate_returns("a2")
    assert (returns.total, returns.daily, returns.weekly, returns.monthly) == (0, 0, 0, 0)
    assert funds.get_initial_investment("a2") == Decimal("0")


async def test_safety_subscribers_hear_about_thin_balance(funds, chain):
    seen = []
    funds.safety.subscribe(lambda agent_id, status: seen.append((agent_id, status.available_balance)))
    chain.balances["wallet-1"] = Decimal("0.01")
    funds.register_agent("a1", make_config())

    await funds.get_funds_status("a1")
    assert seen == [("a1", Decimal("0.01"))]

    await funds.update_funds_status("a1", available_balance=Decimal("2"))
    assert len(seen) == 1
