"""CruiseModule — the orchestrator that keeps every agent cruising.

Per agent it owns a state machine and three recurring tasks tagged
``agent:<id>``:

  health_check   refresh funds → state machine → risk → fill → optimize
  market_check   drop pools that fell off the recommendation list, add new ones
  optimization   full plan from the position optimizer

Risk timers run separately in RiskController. Every public method returns
an OperationResult; nothing raises out of here.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from lpcruise.config import settings
from lpcruise.core.errors import PersistenceError
from lpcruise.core.metrics import MetricsSink
from lpcruise.core.scheduler import ScheduledTaskManager
from lpcruise.core.state_machine import AgentStateMachine
from lpcruise.core.types import (
    AgentConfig,
    AgentEvent,
    AgentState,
    AgentStatus,
    FundsStatus,
    OperationResult,
    ResultKind,
)
from lpcruise.finance.executor import TransactionExecutor
from lpcruise.finance.funds import FundsManager, LedgerType
from lpcruise.finance.transactions import (
    AddLiquidity,
    RemoveLiquidity,
    TransactionPayload,
    TransactionPriority,
)
from lpcruise.markets.optimizer import ActionType, OptimizationAction, PositionOptimizer
from lpcruise.markets.recommendations import RecommendationService
from lpcruise.memory.store import StatePersistence
from lpcruise.risk.controller import RiskController

logger = logging.getLogger(__name__)

_PAUSED = frozenset({AgentState.EMERGENCY_EXIT, AgentState.STOPPED})


def agent_tag(agent_id: str) -> str:
    return f"agent:{agent_id}"


def task_id(agent_id: str, kind: str) -> str:
    return f"agent:{agent_id}:{kind}"


@dataclass(frozen=True)
class CruiseConfig:
    """Agent config merged with orchestrator defaults; intervals in seconds."""

    agent: AgentConfig
    health_check_interval: float
    market_check_interval: float
    optimization_interval: float
    max_positions: int
    min_health_score: float

    @classmethod
    def merge(cls, config: AgentConfig) -> "CruiseConfig":
        return cls(
            agent=config,
            health_check_interval=(
                config.health_check_interval_minutes or settings.health_check_interval_minutes
            ) * 60,
            market_check_interval=(
                config.market_check_interval_minutes or settings.market_check_interval_minutes
            ) * 60,
            optimization_interval=(
                config.optimization_interval_hours or settings.optimization_interval_hours
            ) * 3600,
            max_positions=config.max_positions or settings.default_max_positions,
            min_health_score=settings.min_pool_health_score,
        )


@dataclass
class _Agent:
    machine: AgentStateMachine
    cruise: CruiseConfig
    unsubscribe: list[Callable[[], None]] = field(default_factory=list)


class CruiseModule:
    def __init__(
        self,
        persistence: StatePersistence,
        funds: FundsManager,
        executor: TransactionExecutor,
        risk: RiskController,
        scheduler: ScheduledTaskManager,
        recommendations: RecommendationService,
        optimizer: PositionOptimizer,
        metrics: MetricsSink,
    ) -> None:
        self._persistence = persistence
        self._funds = funds
        self._executor = executor
        self._risk = risk
        self._scheduler = scheduler
        self._recommendations = recommendations
        self._optimizer = optimizer
        self._metrics = metrics
        self._agents: dict[str, _Agent] = {}
        self._running = False
        self._funds.safety.subscribe(self._on_funds_unsafe)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def agent_ids(self) -> list[str]:
        return list(self._agents)

    def get_state_machine(self, agent_id: str) -> AgentStateMachine | None:
        agent = self._agents.get(agent_id)
        return agent.machine if agent else None

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> OperationResult:
        if self._running:
            return OperationResult.ok("Already running")
        for agent_id, agent in self._agents.items():
            self._risk.register_agent(agent_id, agent.machine)
        self._scheduler.start()
        self._running = True
        logger.info("Cruise started with %d agent(s)", len(self._agents))
        return OperationResult.ok("Cruise started")

    async def stop(self) -> OperationResult:
        await self._scheduler.stop()
        await self._risk.stop()
        self._running = False
        logger.info("Cruise stopped")
        return OperationResult.ok("Cruise stopped")

    async def restore_agents(self) -> OperationResult:
        """Re-register every agent that has a saved snapshot."""
        try:
            saved = await self._persistence.load_all()
        except PersistenceError as exc:
            logger.error("Could not load saved agents: %s", exc)
            return OperationResult.fail(f"Could not load saved agents: {exc}")

        restored = []
        for status in saved:
            result = await self.register_agent(status.agent_id, status.config)
            if result.success:
                restored.append(status.agent_id)
        logger.info("Restored %d of %d saved agent(s)", len(restored), len(saved))
        return OperationResult.ok(f"Restored {len(restored)} agent(s)", agents=restored)

    # ── registration ──────────────────────────────────────────────────────────

    async def register_agent(self, agent_id: str, config: AgentConfig) -> OperationResult:
        if agent_id in self._agents:
            logger.info("[agent %s] Already registered", agent_id)
            return OperationResult.ok("Agent already registered", agent_id=agent_id)

        try:
            cruise = CruiseConfig.merge(config)
            machine = AgentStateMachine(agent_id, config, self._persistence)
            await machine.initialize()

            agent = _Agent(machine=machine, cruise=cruise)
            agent.unsubscribe.append(machine.state_changes.subscribe(self._on_state_change))
            self._agents[agent_id] = agent

            self._funds.register_agent(agent_id, config)
            self._risk.register_agent(agent_id, machine)
            if machine.state == AgentState.INITIALIZING:
                await machine.handle_event(AgentEvent.START)
            self._schedule(agent_id, cruise)
            if machine.state in _PAUSED:
                self._scheduler.disable_tasks_by_tag(agent_tag(agent_id))
        except Exception as exc:
            logger.error("[agent %s] Registration failed: %s", agent_id, exc, exc_info=True)
            await self._teardown(agent_id)
            return OperationResult.fail(f"Registration failed: {exc}")

        self._update_gauges()
        logger.info(
            "[agent %s] Registered (%s, wallet %s, state %s)",
            agent_id, config.name, config.wallet_id, machine.state,
        )
        await self.perform_health_check(agent_id)
        return OperationResult.ok("Agent registered", agent_id=agent_id, state=str(machine.state))

    async def unregister_agent(self, agent_id: str) -> OperationResult:
        if agent_id not in self._agents:
            return _not_registered(agent_id)
        await self._teardown(agent_id)
        try:
            await self._persistence.delete_state(agent_id)
        except PersistenceError as exc:
            logger.error("[agent %s] Could not delete saved state: %s", agent_id, exc)
        self._update_gauges()
        logger.info("[agent %s] Unregistered", agent_id)
        return OperationResult.ok("Agent unregistered", agent_id=agent_id)

    async def _teardown(self, agent_id: str) -> None:
        self._scheduler.cancel_tasks_by_tag(agent_tag(agent_id))
        await self._risk.unregister_agent(agent_id)
        self._funds.unregister_agent(agent_id)
        self._metrics.forget_agent(agent_id)
        agent = self._agents.pop(agent_id, None)
        if agent is not None:
            for unsubscribe in agent.unsubscribe:
                unsubscribe()

    def _schedule(self, agent_id: str, cruise: CruiseConfig) -> None:
        tags = (agent_tag(agent_id),)
        self._scheduler.schedule_recurring_task(
            task_id(agent_id, "health_check"),
            lambda: self.perform_health_check(agent_id),
            cruise.health_check_interval,
            tags=tags,
        )
        self._scheduler.schedule_recurring_task(
            task_id(agent_id, "market_check"),
            lambda: self.check_market_changes(agent_id),
            cruise.market_check_interval,
            tags=tags,
        )
        self._scheduler.schedule_recurring_task(
            task_id(agent_id, "optimization"),
            lambda: self.optimize_positions(agent_id),
            cruise.optimization_interval,
            tags=tags,
        )

    def _update_gauges(self) -> None:
        self._metrics.set_agent_count(len(self._agents))
        self._metrics.set_task_counts(
            self._scheduler.task_count(), self._scheduler.enabled_task_count()
        )

    # ── subscribers ───────────────────────────────────────────────────────────

    async def _on_state_change(self, status: AgentStatus) -> None:
        tag = agent_tag(status.agent_id)
        if status.state in _PAUSED:
            count = self._scheduler.disable_tasks_by_tag(tag)
            logger.info("[agent %s] %s: paused %d task(s)", status.agent_id, status.state, count)
        elif status.state == AgentState.RUNNING:
            self._scheduler.enable_tasks_by_tag(tag)
        self._update_gauges()

    async def _on_funds_unsafe(self, agent_id: str, funds: FundsStatus) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        await agent.machine.set_error(
            f"Available balance {funds.available_balance} under emergency reserve "
            f"{self._funds.emergency_reserve}"
        )

    # ── health check ──────────────────────────────────────────────────────────

    async def perform_health_check(self, agent_id: str) -> OperationResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            return _not_registered(agent_id)

        started = time.monotonic()
        success = False
        skipped = False
        try:
            funds = await self._funds.get_funds_status(agent_id)
            await agent.machine.update_funds(funds)
            if agent.machine.state != AgentState.RUNNING:
                logger.info(
                    "[agent %s] Not running (%s), skipping health check",
                    agent_id, agent.machine.state,
                )
                skipped = True
                return _not_running(agent_id, agent.machine.state)

            assessment = await self._risk.assess_risk(agent_id)

            opened = 0
            if (
                len(funds.positions) < agent.cruise.max_positions
                and funds.available_balance >= agent.machine.config.min_balance
            ):
                opened = await self._fill(agent_id, agent, funds)

            unhealthy = await self._optimizer.identify_unhealthy_positions(agent_id, funds)
            optimized = None
            if unhealthy:
                logger.info("[agent %s] %d unhealthy position(s), optimizing", agent_id, len(unhealthy))
                optimized = (await self.optimize_positions(agent_id)).success
            else:
                logger.info("[agent %s] All positions healthy", agent_id)

            success = True
            return OperationResult.ok(
                "Health check complete",
                agent_id=agent_id,
                health_score=assessment.health_score,
                risk_level=str(assessment.risk_level),
                positions=len(funds.positions),
                available_balance=funds.available_balance,
                total_value=funds.total_value,
                opened=opened,
                unhealthy=[p.pool_id for p in unhealthy],
                optimized=optimized,
            )
        except Exception as exc:
            logger.error("[agent %s] Health check failed: %s", agent_id, exc, exc_info=True)
            return OperationResult.fail(f"Health check failed: {exc}", agent_id=agent_id)
        finally:
            if not skipped:
                self._metrics.record_health_check(agent_id, success, time.monotonic() - started)

    async def _fill(self, agent_id: str, agent: _Agent, funds: FundsStatus) -> int:
        """Open positions in the best recommended pools not already held."""
        slots = agent.cruise.max_positions - len(funds.positions)
        if slots <= 0:
            return 0

        held = funds.pool_ids
        candidates = sorted(
            (r for r in await self._recommendations.get_recommendations() if r.pool_id not in held),
            key=lambda r: r.health_score,
            reverse=True,
        )[:slots]
        if not candidates:
            logger.info("[agent %s] No recommended pools to fill", agent_id)
            return 0

        # Keep one share back as a buffer
        per_position = funds.available_balance / (slots + 1)
        opened = 0
        for rec in candidates:
            if not await self._funds.check_transaction_limit(
                agent_id, per_position, LedgerType.ADD_LIQUIDITY
            ):
                logger.info("[agent %s] Skipping %s: over limits", agent_id, rec.pool_id)
                continue
            payload = AddLiquidity(pool_id=rec.pool_id, amount=per_position, target_bins=rec.target_bins)
            if await self._execute(agent_id, agent, payload, LedgerType.ADD_LIQUIDITY):
                opened += 1
        logger.info("[agent %s] Filled %d of %d candidate pool(s)", agent_id, opened, len(candidates))
        return opened

    # ── optimization ──────────────────────────────────────────────────────────

    async def optimize_positions(self, agent_id: str) -> OperationResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            return _not_registered(agent_id)
        if agent.machine.state != AgentState.RUNNING:
            return _not_running(agent_id, agent.machine.state)

        started = time.monotonic()
        success = False
        try:
            funds = await self._funds.get_funds_status(agent_id)
            plan = await self._optimizer.calculate_optimal_positions(
                agent_id, funds, agent.machine.config
            )
            if plan is None:
                return OperationResult.fail("No optimization plan could be computed", agent_id=agent_id)
            if not plan.actions:
                success = True
                return OperationResult.ok("No optimization needed", agent_id=agent_id, actions=0)

            done = 0
            for action in plan.actions:
                if await self._apply_action(agent_id, agent, action):
                    done += 1

            success = done == len(plan.actions)
            data = dict(
                agent_id=agent_id,
                actions=len(plan.actions),
                succeeded=done,
                expected_health_improvement=plan.expected_health_improvement,
            )
            if success:
                return OperationResult.ok("Optimization complete", **data)
            return OperationResult.fail(
                f"{len(plan.actions) - done} of {len(plan.actions)} action(s) failed", **data
            )
        except Exception as exc:
            logger.error("[agent %s] Optimization failed: %s", agent_id, exc, exc_info=True)
            return OperationResult.fail(f"Optimization failed: {exc}", agent_id=agent_id)
        finally:
            self._metrics.record_optimization(agent_id, success, time.monotonic() - started)

    async def _apply_action(self, agent_id: str, agent: _Agent, action: OptimizationAction) -> bool:
        if action.type == ActionType.ADD:
            return await self._add(agent_id, agent, action, action.amount)
        if action.type == ActionType.REMOVE:
            return await self._execute(
                agent_id, agent,
                RemoveLiquidity(pool_id=action.pool_id, amount=action.amount),
                LedgerType.REMOVE_LIQUIDITY,
            )

        diff = (action.target_amount or Decimal("0")) - (action.current_amount or Decimal("0"))
        if diff > 0:
            return await self._add(agent_id, agent, action, diff)
        if diff < 0:
            return await self._execute(
                agent_id, agent,
                RemoveLiquidity(pool_id=action.pool_id, amount=-diff),
                LedgerType.REMOVE_LIQUIDITY,
            )
        return True

    async def _add(
        self, agent_id: str, agent: _Agent, action: OptimizationAction, amount: Decimal
    ) -> bool:
        if not await self._funds.check_transaction_limit(agent_id, amount, LedgerType.ADD_LIQUIDITY):
            logger.info("[agent %s] %s on %s denied by limits", agent_id, action.type, action.pool_id)
            return False
        payload = AddLiquidity(pool_id=action.pool_id, amount=amount, target_bins=action.target_bins)
        return await self._execute(agent_id, agent, payload, LedgerType.ADD_LIQUIDITY)

    async def _execute(
        self,
        agent_id: str,
        agent: _Agent,
        payload: TransactionPayload,
        ledger_type: LedgerType,
    ) -> bool:
        try:
            result = await self._executor.submit(
                agent_id,
                agent.machine.config.wallet_id,
                payload,
                priority=TransactionPriority.MEDIUM,
            )
        except Exception as exc:
            logger.error("[agent %s] %s failed: %s", agent_id, payload.type, exc)
            return False
        if not result.success:
            logger.warning(
                "[agent %s] %s on %s failed: %s",
                agent_id, payload.type, getattr(payload, "pool_id", "-"), result.error,
            )
            return False
        self._funds.record_transaction(agent_id, payload.amount, ledger_type)
        self._funds.invalidate(agent_id)
        return True

    # ── market changes ────────────────────────────────────────────────────────

    async def check_market_changes(self, agent_id: str) -> OperationResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            return _not_registered(agent_id)
        if agent.machine.state != AgentState.RUNNING:
            return _not_running(agent_id, agent.machine.state)

        try:
            funds = await self._funds.get_funds_status(agent_id)
            recs = list(await self._recommendations.get_recommendations())
            if not recs:
                return OperationResult.ok("No recommendations available", agent_id=agent_id)

            recommended = {r.pool_id for r in recs}
            dropped = [p.pool_id for p in funds.positions if p.pool_id not in recommended]
            optimized = None
            if dropped:
                logger.warning(
                    "[agent %s] %d held pool(s) no longer recommended: %s",
                    agent_id, len(dropped), ", ".join(dropped),
                )
                optimized = (await self.optimize_positions(agent_id)).success

            opened = 0
            fresh = [r for r in recs if r.pool_id not in funds.pool_ids]
            if fresh:
                best = max(fresh, key=lambda r: r.health_score)
                if (
                    best.health_score > agent.cruise.min_health_score
                    and len(funds.positions) < agent.cruise.max_positions
                ):
                    opened = await self._fill(agent_id, agent, funds)

            return OperationResult.ok(
                "Market check complete",
                agent_id=agent_id,
                dropped=dropped,
                optimized=optimized,
                opened=opened,
            )
        except Exception as exc:
            logger.error("[agent %s] Market check failed: %s", agent_id, exc, exc_info=True)
            return OperationResult.fail(f"Market check failed: {exc}", agent_id=agent_id)

    # ── manual control ────────────────────────────────────────────────────────

    async def start_agent(self, agent_id: str) -> OperationResult:
        return await self._send(agent_id, AgentEvent.START)

    async def stop_agent(self, agent_id: str) -> OperationResult:
        return await self._send(agent_id, AgentEvent.STOP)

    async def emergency_exit(self, agent_id: str) -> OperationResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            return _not_registered(agent_id)
        await agent.machine.handle_event(AgentEvent.USER_EMERGENCY)
        if await self._risk.execute_emergency_exit(agent_id, "requested by user"):
            return OperationResult.ok("Emergency exit complete", agent_id=agent_id)
        return OperationResult.fail("Emergency exit did not complete", agent_id=agent_id)

    async def _send(self, agent_id: str, event: AgentEvent) -> OperationResult:
        agent = self._agents.get(agent_id)
        if agent is None:
            return _not_registered(agent_id)
        state = agent.machine.state
        if await agent.machine.handle_event(event):
            return OperationResult.ok(
                f"{event}: {state} → {agent.machine.state}",
                agent_id=agent_id,
                state=str(agent.machine.state),
            )
        return OperationResult.fail(
            f"{event} not applicable in state {state}", agent_id=agent_id, state=str(state)
        )

    # ── queries ───────────────────────────────────────────────────────────────

    def get_status(self) -> OperationResult:
        agents = [a.machine.get_status() for a in self._agents.values()]
        return OperationResult.ok(
            "Cruise status",
            running=self._running,
            agents=agents,
            tasks={
                "total": self._scheduler.task_count(),
                "enabled": self._scheduler.enabled_task_count(),
            },
        )

    def get_metrics(self) -> OperationResult:
        return OperationResult.ok("Cruise metrics", **self._metrics.snapshot())

    async def get_agent_metrics(self, agent_id: str) -> OperationResult:
        if agent_id not in self._agents:
            return _not_registered(agent_id)
        snapshot: dict[str, Any] = self._metrics.agent_snapshot(agent_id) or {"agent_id": agent_id}
        tag = agent_tag(agent_id)
        snapshot["tasks"] = {
            "total": self._scheduler.task_count_by_tag(tag),
            "enabled": self._scheduler.enabled_task_count_by_tag(tag),
        }
        snapshot["risk_history"] = self._risk.get_risk_history(agent_id)[-10:]
        try:
            snapshot["returns"] = await self._funds.calculate_returns(agent_id)
        except Exception as exc:
            logger.warning("[agent %s] Returns unavailable: %s", agent_id, exc)
            snapshot["returns"] = None
        return OperationResult.ok("Agent metrics", **snapshot)


def _not_registered(agent_id: str) -> OperationResult:
    logger.warning("[agent %s] Not registered", agent_id)
    return OperationResult.fail(
        f"Agent {agent_id} is not registered", ResultKind.NOT_REGISTERED, agent_id=agent_id
    )


def _not_running(agent_id: str, state: AgentState) -> OperationResult:
    return OperationResult.fail(
        f"Agent {agent_id} is {state}, not running",
        ResultKind.NOT_RUNNING,
        agent_id=agent_id,
        state=str(state),
    )
