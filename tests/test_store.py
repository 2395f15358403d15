"""Tests for the SQLite agent snapshot store."""
from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_config
from lpcruise.core.errors import PersistenceError
from lpcruise.core.state_machine import AgentStateMachine
from lpcruise.core.types import AgentState, AgentStatus, FundsStatus, Position, ResultKind, utcnow
from lpcruise.memory.store import AgentSnapshot, Base, SqliteStatePersistence


@pytest.fixture
async def store(tmp_path):
    s = SqliteStatePersistence(tmp_path / "db" / "snapshots.db")
    await s.init()
    yield s
    await s.close()


def status(agent_id: str, state: AgentState = AgentState.RUNNING, **kw) -> AgentStatus:
    return AgentStatus(
        agent_id=agent_id,
        state=state,
        config=make_config(min_balance=Decimal("0.25")),
        funds=FundsStatus.create(Decimal("1.5"), [Position("pool-a", Decimal("2"), Decimal("300"))]),
        **kw,
    )


async def test_round_trip_keeps_every_field(store):
    saved = status("a1", AgentState.PARTIAL_REDUCING, last_error="rpc timeout")
    await store.save_state("a1", saved)

    loaded = await store.load_state("a1")

    assert loaded == saved
    assert loaded.config.min_balance == Decimal("0.25")
    assert loaded.funds.positions[0].pool_id == "pool-a"
    assert loaded.last_update.tzinfo is not None


async def test_save_overwrites_previous_snapshot(store):
    await store.save_state("a1", status("a1"))
    await store.save_state("a1", status("a1", AgentState.STOPPED))
    assert (await store.load_state("a1")).state == AgentState.STOPPED
    assert len(await store.load_all()) == 1


async def test_missing_agent_loads_none(store):
    assert await store.load_state("nobody") is None


async def test_load_all_and_delete(store):
    await store.save_state("b", status("b"))
    await store.save_state("a", status("a"))

    assert [s.agent_id for s in await store.load_all()] == ["a", "b"]

    await store.delete_state("a")
    assert await store.load_state("a") is None
    assert [s.agent_id for s in await store.load_all()] == ["b"]


async def test_use_before_init_raises(tmp_path):
    store = SqliteStatePersistence(tmp_path / "never.db")
    with pytest.raises(PersistenceError):
        await store.load_state("a1")
    with pytest.raises(PersistenceError):
        await store.save_state("a1", status("a1"))


# ── failures stay inside PersistenceError ─────────────────────────────────────


@pytest.fixture
def persistence(store):
    return store


async def write_raw(store, agent_id: str, payload: str) -> None:
    async with store._sessions()() as session:
        session.add(
            AgentSnapshot(agent_id=agent_id, state="running", updated_at=utcnow(), payload=payload)
        )
        await session.commit()


async def drop_table(store) -> None:
    async with store._engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def test_corrupt_snapshot_raises_persistence_error(store):
    await write_raw(store, "a1", "{not json")
    with pytest.raises(PersistenceError):
        await store.load_state("a1")


async def test_load_all_skips_corrupt_rows(store):
    await write_raw(store, "a1", "{not json")
    await store.save_state("a2", status("a2"))
    assert [s.agent_id for s in await store.load_all()] == ["a2"]


async def test_machine_with_corrupt_snapshot_starts_degraded(store):
    await write_raw(store, "a1", '{"agent_id": "a1"}')
    machine = AgentStateMachine("a1", make_config(), store)

    await machine.initialize()

    assert machine.state == AgentState.INITIALIZING
    assert "Initialization failed" in machine.get_status().last_error


async def test_missing_table_raises_persistence_error(store):
    await drop_table(store)
    with pytest.raises(PersistenceError):
        await store.delete_state("a1")
    with pytest.raises(PersistenceError):
        await store.load_all()
    with pytest.raises(PersistenceError):
        await store.load_state("a1")


async def test_cruise_survives_database_errors(cruise, store):
    assert (await cruise.register_agent("a1", make_config())).success
    await drop_table(store)

    result = await cruise.unregister_agent("a1")
    assert result.success
    assert cruise.agent_ids == []

    restored = await cruise.restore_agents()
    assert restored.success is False
    assert restored.kind == ResultKind.FAILED
