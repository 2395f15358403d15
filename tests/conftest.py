"""Shared fakes for every port, plus fixtures wiring them together."""
from __future__ import annotations

from decimal import Decimal
from typing import Sequence

import pytest

from lpcruise.core.cruise import CruiseModule
from lpcruise.core.errors import ChainError, PersistenceError
from lpcruise.core.metrics import CruiseMetrics
from lpcruise.core.scheduler import ScheduledTaskManager
from lpcruise.core.types import AgentConfig, AgentStatus, Position
from lpcruise.finance.chain import ChainClient, TransactionBuilder, TransactionSender, TransactionSigner
from lpcruise.finance.executor import TransactionExecutor
from lpcruise.finance.funds import FundsManager
from lpcruise.markets.optimizer import RecommendationOptimizer
from lpcruise.markets.recommendations import PoolRecommendation, RecommendationService
from lpcruise.memory.store import StatePersistence
from lpcruise.risk.controller import RiskController


# ── ports ─────────────────────────────────────────────────────────────────────


class MemoryStatePersistence(StatePersistence):
    def __init__(self) -> None:
        self.rows: dict[str, AgentStatus] = {}
        self.saved_states: list[tuple[str, str]] = []
        self.fail_saves = False
        self.fail_loads = False

    async def save_state(self, agent_id: str, status: AgentStatus) -> None:
        if self.fail_saves:
            raise PersistenceError("disk full")
        self.rows[agent_id] = status
        self.saved_states.append((agent_id, str(status.state)))

    async def load_state(self, agent_id: str) -> AgentStatus | None:
        if self.fail_loads:
            raise PersistenceError("db locked")
        return self.rows.get(agent_id)

    async def delete_state(self, agent_id: str) -> None:
        self.rows.pop(agent_id, None)

    async def load_all(self) -> list[AgentStatus]:
        return list(self.rows.values())


class FakeChainClient(ChainClient):
    def __init__(self) -> None:
        self.balances: dict[str, Decimal] = {}
        self.positions: dict[str, list[Position]] = {}
        self.balance_calls = 0
        self.fail = False

    async def get_balance(self, wallet_id: str) -> Decimal:
        self.balance_calls += 1
        if self.fail:
            raise ChainError("rpc down")
        return self.balances.get(wallet_id, Decimal("0"))

    async def get_positions(self, wallet_id: str) -> Sequence[Position]:
        if self.fail:
            raise ChainError("indexer down")
        return list(self.positions.get(wallet_id, []))


class FakeBuilder(TransactionBuilder):
    def __init__(self) -> None:
        self.built: list = []
        self.fail_pools: set[str] = set()

    async def _build(self, kind: str, wallet_id: str, payload):
        if getattr(payload, "pool_id", None) in self.fail_pools:
            raise ChainError(f"cannot build for {payload.pool_id}")
        self.built.append((kind, wallet_id, payload))
        return f"unsigned:{kind}:{len(self.built)}"

    async def build_add_liquidity(self, wallet_id, payload):
        return await self._build("add_liquidity", wallet_id, payload)

    async def build_remove_liquidity(self, wallet_id, payload):
        return await self._build("remove_liquidity", wallet_id, payload)

    async def build_swap(self, wallet_id, payload):
        return await self._build("swap", wallet_id, payload)

    async def build_emergency_exit(self, wallet_id, payload):
        return await self._build("emergency_exit", wallet_id, payload)


class FakeSigner(TransactionSigner):
    async def sign(self, unsigned, wallet_id):
        return f"signed[{wallet_id}]:{unsigned}"


class FakeSender(TransactionSender):
    def __init__(self) -> None:
        self.sent: list = []
        self.failures_left = 0
        self.always_fail = False
        self.confirm_ok = True

    async def send(self, signed) -> str:
        if self.always_fail or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise ChainError("blockhash not found")
        self.sent.append(signed)
        return f"sig-{len(self.sent)}"

    async def confirm(self, signature: str, confirmations: int) -> bool:
        return self.confirm_ok


class FakeRecommendations(RecommendationService):
    def __init__(self, recs: list[PoolRecommendation] | None = None) -> None:
        self.recs = recs or []

    async def get_recommendations(self) -> list[PoolRecommendation]:
        return list(self.recs)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []
        self.hook = None

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.hook is not None:
            self.hook()


def make_config(**overrides) -> AgentConfig:
    fields = dict(name="test-agent", wallet_id="wallet-1")
    fields.update(overrides)
    return AgentConfig(**fields)


# ── fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def persistence() -> MemoryStatePersistence:
    return MemoryStatePersistence()


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(builder, sender, sleep) -> TransactionExecutor:
    return TransactionExecutor(builder, FakeSigner(), sender, retry_delays=[5, 15, 30], sleep=sleep)


@pytest.fixture
def funds(chain) -> FundsManager:
    return FundsManager(chain)


@pytest.fixture
def recommendations() -> FakeRecommendations:
    return FakeRecommendations()


@pytest.fixture
def risk(funds, executor) -> RiskController:
    return RiskController(funds, executor)


@pytest.fixture
def scheduler() -> ScheduledTaskManager:
    return ScheduledTaskManager()


@pytest.fixture
async def cruise(persistence, funds, executor, risk, scheduler, recommendations):
    module = CruiseModule(
        persistence=persistence,
        funds=funds,
        executor=executor,
        risk=risk,
        scheduler=scheduler,
        recommendations=recommendations,
        optimizer=RecommendationOptimizer(recommendations),
        metrics=CruiseMetrics(),
    )
    yield module
    await module.stop()
