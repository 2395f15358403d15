"""RiskController — periodic risk assessment and remediation per agent.

Each registered agent gets its own timer task. A cycle is:

  1. assess   score the current funds snapshot
  2. handle   record the assessment, feed the escalation windows (which may
              fire events into the state machine) and remediate on-chain
  3. review   recover agents stuck in WAITING or a risk state too long

Cycles are single-flight per agent: a tick that finds the previous cycle
still running is skipped.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from lpcruise.config import settings
from lpcruise.core.errors import AgentNotRegistered
from lpcruise.core.state_machine import AgentStateMachine
from lpcruise.core.types import (
    AgentEvent,
    AgentState,
    RiskAssessment,
    RiskLevel,
    RiskTrigger,
    utcnow,
)
from lpcruise.finance.executor import TransactionExecutor
from lpcruise.finance.funds import FundsManager, LedgerType
from lpcruise.finance.transactions import EmergencyExit, RemoveLiquidity, TransactionPriority
from lpcruise.risk import scorer
from lpcruise.risk.escalation import RiskEscalation

logger = logging.getLogger(__name__)

# Window used by the stale-state review to average recent scores
RECOVERY_WINDOW = timedelta(minutes=15)

_RECOVERABLE = frozenset(
    {AgentState.WAITING, AgentState.PARTIAL_REDUCING, AgentState.EMERGENCY_EXIT}
)


@dataclass
class _Watch:
    machine: AgentStateMachine
    escalation: RiskEscalation
    history: deque[RiskAssessment]
    timer: asyncio.Task | None = None
    cycle: asyncio.Task | None = None
    cycles: int = 0
    recovery_attempts: int = 0
    last_recovery: datetime | None = None


class RiskController:
    def __init__(
        self,
        funds: FundsManager,
        executor: TransactionExecutor,
        interval_seconds: float | None = None,
        partial_reduction_pct: float | None = None,
        score_fn: scorer.Scorer = scorer.score,
        history_size: int | None = None,
        state_timeout: timedelta | None = None,
        recovery_score: float | None = None,
        max_recovery_attempts: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._funds = funds
        self._executor = executor
        self.interval_seconds = interval_seconds or settings.risk_check_interval_seconds
        self.partial_reduction_pct = partial_reduction_pct or settings.partial_reduction_pct
        self._score = score_fn
        self.history_size = history_size or settings.risk_history_size
        self.state_timeout = state_timeout or timedelta(minutes=settings.state_timeout_minutes)
        self.recovery_score = (
            settings.recovery_health_score if recovery_score is None else recovery_score
        )
        self.max_recovery_attempts = (
            settings.max_recovery_attempts if max_recovery_attempts is None else max_recovery_attempts
        )
        self._clock = clock
        self._watches: dict[str, _Watch] = {}

    # ── registration ──────────────────────────────────────────────────────────

    def register_agent(self, agent_id: str, machine: AgentStateMachine, start_timer: bool = True) -> None:
        if agent_id in self._watches:
            return
        watch = _Watch(
            machine=machine,
            escalation=RiskEscalation(agent_id, machine.config),
            history=deque(maxlen=self.history_size),
        )
        self._watches[agent_id] = watch
        if start_timer:
            watch.timer = asyncio.create_task(self._timer(agent_id), name=f"risk:{agent_id}")
        logger.info("[agent %s] Risk monitoring every %ss", agent_id, self.interval_seconds)

    async def unregister_agent(self, agent_id: str) -> None:
        watch = self._watches.pop(agent_id, None)
        if watch is None:
            return
        await _cancel(watch.timer)
        logger.info("[agent %s] Risk monitoring stopped", agent_id)

    async def stop(self) -> None:
        for agent_id in list(self._watches):
            await self.unregister_agent(agent_id)

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self._watches

    def _watch(self, agent_id: str) -> _Watch:
        try:
            return self._watches[agent_id]
        except KeyError:
            raise AgentNotRegistered(agent_id) from None

    async def _timer(self, agent_id: str) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            watch = self._watches.get(agent_id)
            if watch is None:
                return
            if watch.cycle is not None and not watch.cycle.done():
                logger.debug("[agent %s] Previous risk cycle still running, skipping", agent_id)
                continue
            watch.cycle = asyncio.create_task(self.run_cycle(agent_id), name=f"risk-cycle:{agent_id}")

    # ── cycle ─────────────────────────────────────────────────────────────────

    async def run_cycle(self, agent_id: str) -> RiskAssessment | None:
        """One assess → handle → review pass. Never raises."""
        try:
            assessment = await self.assess_risk(agent_id)
            await self.handle_risk(agent_id, assessment)
            await self.review_stale_state(agent_id)
            self._watch(agent_id).cycles += 1
            return assessment
        except Exception as exc:
            logger.error("[agent %s] Risk cycle failed: %s", agent_id, exc, exc_info=True)
            return None

    async def assess_risk(self, agent_id: str) -> RiskAssessment:
        watch = self._watch(agent_id)
        config = watch.machine.config
        now = self._clock()
        try:
            funds = await self._funds.get_funds_status(agent_id)
            health, triggers = self._score(funds)
        except Exception as exc:
            logger.error("[agent %s] Risk assessment failed: %s", agent_id, exc)
            return RiskAssessment(
                agent_id=agent_id,
                timestamp=now,
                health_score=0.0,
                risk_level=RiskLevel.CRITICAL,
                triggers=(RiskTrigger("assessment_error", 0.0, 1.0),),
            )

        level = scorer.classify(health, config)
        logger.info("[agent %s] Health score %.2f, risk %s", agent_id, health, level)
        return RiskAssessment(
            agent_id=agent_id,
            timestamp=now,
            health_score=health,
            risk_level=level,
            triggers=triggers,
        )

    async def handle_risk(self, agent_id: str, assessment: RiskAssessment) -> None:
        watch = self._watch(agent_id)
        watch.history.append(assessment)
        machine = watch.machine

        if assessment.risk_level == RiskLevel.CRITICAL:
            await machine.set_error("Risk assessment failed; no action taken")
            return

        event = watch.escalation.observe(assessment, machine.state)
        if event is not None:
            await machine.handle_event(event)

        if assessment.risk_level == RiskLevel.HIGH:
            await self.execute_emergency_exit(
                agent_id,
                f"health score {assessment.health_score:.2f} at or below "
                f"{machine.config.emergency_threshold}",
            )
        elif assessment.risk_level == RiskLevel.MEDIUM:
            await self.execute_partial_reduction(agent_id, self.partial_reduction_pct)

    async def review_stale_state(self, agent_id: str) -> AgentEvent | None:
        """Nudge agents that have sat in WAITING or a risk state past the state timeout.

        One recovery attempt is made per elapsed timeout. Once the attempts run
        out the agent is forced out: USER_EMERGENCY, or STOP from EMERGENCY_EXIT.
        """
        watch = self._watch(agent_id)
        machine = watch.machine
        now = self._clock()
        if machine.state not in _RECOVERABLE or machine.state_duration(now) < self.state_timeout:
            watch.recovery_attempts = 0
            watch.last_recovery = None
            return None
        if watch.last_recovery is not None and now - watch.last_recovery < self.state_timeout:
            return None
        watch.last_recovery = now

        if watch.recovery_attempts >= self.max_recovery_attempts:
            logger.error(
                "[agent %s] Still %s after %d recovery attempts, forcing exit",
                agent_id, machine.state, watch.recovery_attempts,
            )
            if machine.state == AgentState.EMERGENCY_EXIT:
                await machine.handle_event(AgentEvent.STOP)
                return AgentEvent.STOP
            await machine.handle_event(AgentEvent.USER_EMERGENCY)
            await self.execute_emergency_exit(agent_id, "state recovery exhausted")
            return AgentEvent.USER_EMERGENCY

        watch.recovery_attempts += 1
        logger.warning(
            "[agent %s] %s for %s, recovery attempt %d",
            agent_id, machine.state, machine.state_duration(now), watch.recovery_attempts,
        )

        if machine.state == AgentState.PARTIAL_REDUCING:
            recent = [
                a.health_score for a in watch.history
                if a.risk_level != RiskLevel.CRITICAL and now - a.timestamp <= RECOVERY_WINDOW
            ]
            mean = sum(recent) / len(recent) if recent else None
            if mean is not None and mean > self.recovery_score:
                logger.info(
                    "[agent %s] Mean score %.2f over %s, resolving risk",
                    agent_id, mean, RECOVERY_WINDOW,
                )
                await machine.handle_event(AgentEvent.RISK_RESOLVED)
                return AgentEvent.RISK_RESOLVED
            logger.warning("[agent %s] Risk did not ease while reducing, escalating", agent_id)
            await machine.handle_event(AgentEvent.RISK_HIGH)
            await self.execute_emergency_exit(agent_id, "partial reduction timed out")
            return AgentEvent.RISK_HIGH

        try:
            funds = await self._funds.get_funds_status(agent_id, force_refresh=True)
        except Exception as exc:
            logger.error("[agent %s] Could not refresh funds: %s", agent_id, exc)
            return None

        if machine.state == AgentState.WAITING:
            await machine.update_funds(funds)
            if machine.state == AgentState.RUNNING:
                return AgentEvent.FUNDS_SUFFICIENT
            return None

        if not funds.positions:
            logger.info("[agent %s] Emergency exit complete, stopping agent", agent_id)
            await machine.handle_event(AgentEvent.STOP)
            return AgentEvent.STOP
        return None

    def get_risk_history(self, agent_id: str) -> list[RiskAssessment]:
        watch = self._watches.get(agent_id)
        return list(watch.history) if watch else []

    # ── remediation ───────────────────────────────────────────────────────────

    async def execute_emergency_exit(self, agent_id: str, reason: str) -> bool:
        """Close every open position in one CRITICAL request. True once none remain."""
        logger.warning("[agent %s] Emergency exit: %s", agent_id, reason)
        try:
            machine = self._watch(agent_id).machine
            funds = await self._funds.get_funds_status(agent_id, force_refresh=True)
        except Exception as exc:
            logger.error("[agent %s] Emergency exit aborted: %s", agent_id, exc)
            return False

        if not funds.positions:
            logger.info("[agent %s] No open positions, nothing to exit", agent_id)
            return True

        result = await self._executor.submit(
            agent_id,
            machine.config.wallet_id,
            EmergencyExit(pool_ids=tuple(p.pool_id for p in funds.positions)),
            priority=TransactionPriority.CRITICAL,
            max_retries=settings.emergency_exit_max_retries,
        )
        if not result.success:
            logger.error("[agent %s] Emergency exit failed: %s", agent_id, result.error)
            return False

        exited = sum((p.value_native for p in funds.positions), Decimal("0"))
        self._funds.record_transaction(agent_id, exited, LedgerType.EMERGENCY_EXIT)
        self._funds.invalidate(agent_id)
        logger.info("[agent %s] Emergency exit confirmed (%s)", agent_id, result.tx_hash)
        return True

    async def execute_partial_reduction(self, agent_id: str, fraction: float) -> bool:
        """Withdraw ``fraction`` of every position, largest first. True if all succeeded."""
        logger.info("[agent %s] Partial reduction of %.0f%%", agent_id, fraction * 100)
        try:
            machine = self._watch(agent_id).machine
            funds = await self._funds.get_funds_status(agent_id, force_refresh=True)
        except Exception as exc:
            logger.error("[agent %s] Partial reduction aborted: %s", agent_id, exc)
            return False

        if not funds.positions:
            logger.info("[agent %s] No open positions, nothing to reduce", agent_id)
            return True

        share = Decimal(str(fraction))
        all_ok = True
        for position in sorted(funds.positions, key=lambda p: p.value_usd, reverse=True):
            amount = position.value_native * share
            try:
                result = await self._executor.submit(
                    agent_id,
                    machine.config.wallet_id,
                    RemoveLiquidity(pool_id=position.pool_id, amount=amount),
                    priority=TransactionPriority.HIGH,
                )
            except Exception as exc:
                logger.error(
                    "[agent %s] Reduction of %s failed: %s", agent_id, position.pool_id, exc
                )
                all_ok = False
                continue
            if not result.success:
                logger.error(
                    "[agent %s] Reduction of %s failed: %s", agent_id, position.pool_id, result.error
                )
                all_ok = False
                continue
            self._funds.record_transaction(agent_id, amount, LedgerType.REMOVE_LIQUIDITY)

        self._funds.invalidate(agent_id)
        return all_ok


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
