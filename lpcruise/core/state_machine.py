"""AgentStateMachine — per-agent lifecycle FSM.

    INITIALIZING ──START──▶ RUNNING ◀──START── STOPPED
                              │  ▲
                   FUNDS_LOW  │  │ FUNDS_SUFFICIENT
                              ▼  │
                            WAITING

    RUNNING ──RISK_MEDIUM──▶ PARTIAL_REDUCING ──RISK_RESOLVED──▶ RUNNING
    any ──RISK_HIGH / USER_EMERGENCY──▶ EMERGENCY_EXIT
    any ──STOP──▶ STOPPED

Event/state pairs not listed are no-ops. Every change is saved through the
persistence port before subscribers hear about it. Debounced risk escalation
lives with the risk controller, which only ever calls ``handle_event``.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta

from lpcruise.config import settings
from lpcruise.core.errors import PersistenceError
from lpcruise.core.events import Subscribers
from lpcruise.core.types import (
    AgentConfig,
    AgentEvent,
    AgentState,
    AgentStatus,
    FundsStatus,
    utcnow,
)
from lpcruise.memory.store import StatePersistence

logger = logging.getLogger(__name__)

_ANY = None

# event → (allowed source states or _ANY, target state)
TRANSITIONS: dict[AgentEvent, tuple[frozenset[AgentState] | None, AgentState]] = {
    AgentEvent.START: (frozenset({AgentState.INITIALIZING, AgentState.STOPPED}), AgentState.RUNNING),
    AgentEvent.STOP: (_ANY, AgentState.STOPPED),
    AgentEvent.FUNDS_LOW: (frozenset({AgentState.RUNNING}), AgentState.WAITING),
    AgentEvent.FUNDS_SUFFICIENT: (frozenset({AgentState.WAITING}), AgentState.RUNNING),
    AgentEvent.RISK_MEDIUM: (frozenset({AgentState.RUNNING}), AgentState.PARTIAL_REDUCING),
    AgentEvent.RISK_HIGH: (_ANY, AgentState.EMERGENCY_EXIT),
    AgentEvent.USER_EMERGENCY: (_ANY, AgentState.EMERGENCY_EXIT),
    AgentEvent.RISK_RESOLVED: (frozenset({AgentState.PARTIAL_REDUCING}), AgentState.RUNNING),
}


def next_state(current: AgentState, event: AgentEvent) -> AgentState:
    """Target state for ``event`` in ``current``; unchanged when unhandled."""
    sources, target = TRANSITIONS[event]
    if sources is _ANY or current in sources:
        return target
    return current


class AgentStateMachine:
    """Lifecycle FSM for one agent. All event handling is serialized."""

    def __init__(
        self,
        agent_id: str,
        config: AgentConfig,
        persistence: StatePersistence,
        history_size: int | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.config = config
        self._persistence = persistence
        self._state = AgentState.INITIALIZING
        self._funds = FundsStatus.empty()
        self._last_update = utcnow()
        self._last_error: str | None = None
        self._state_entered_at = self._last_update
        self._lock = asyncio.Lock()
        self._history: deque[tuple[AgentState, datetime]] = deque(
            maxlen=history_size or settings.risk_history_size
        )
        self._history.append((self._state, self._state_entered_at))
        self.state_changes: Subscribers[[AgentStatus]] = Subscribers(f"state[{agent_id}]")

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Resume from the last persisted snapshot, if any."""
        try:
            saved = await self._persistence.load_state(self.agent_id)
        except PersistenceError as exc:
            logger.error("[agent %s] Failed to load saved state: %s", self.agent_id, exc)
            self._last_error = f"Initialization failed: {exc}"
            return

        if saved is None:
            logger.info("[agent %s] No saved state, starting in %s", self.agent_id, self._state)
            return

        self._state = saved.state
        self._funds = saved.funds
        self._last_update = saved.last_update
        self._last_error = saved.last_error
        self._state_entered_at = saved.last_update
        self._history.append((self._state, self._state_entered_at))
        logger.info("[agent %s] Loaded saved state: %s", self.agent_id, self._state)

    # ── queries ───────────────────────────────────────────────────────────────

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def funds(self) -> FundsStatus:
        return self._funds

    @property
    def state_entered_at(self) -> datetime:
        return self._state_entered_at

    def state_duration(self, now: datetime | None = None) -> timedelta:
        return (now or utcnow()) - self._state_entered_at

    def get_status(self) -> AgentStatus:
        return AgentStatus(
            agent_id=self.agent_id,
            state=self._state,
            config=self.config,
            funds=self._funds,
            last_update=self._last_update,
            last_error=self._last_error,
        )

    def get_state_history(self) -> list[tuple[AgentState, datetime]]:
        return list(self._history)

    # ── mutations ─────────────────────────────────────────────────────────────

    async def handle_event(self, event: AgentEvent) -> bool:
        """Apply ``event``. Returns True only if the state changed."""
        async with self._lock:
            return await self._apply(event)

    async def update_funds(self, funds: FundsStatus) -> bool:
        """Store a funds snapshot and fire FUNDS_LOW / FUNDS_SUFFICIENT as needed."""
        async with self._lock:
            self._funds = funds
            self._last_update = utcnow()

            if funds.available_balance < self.config.min_balance:
                if self._state == AgentState.RUNNING:
                    logger.warning(
                        "[agent %s] Funds low: %s available < %s minimum",
                        self.agent_id, funds.available_balance, self.config.min_balance,
                    )
                changed = await self._apply(AgentEvent.FUNDS_LOW)
            elif self._state == AgentState.WAITING:
                logger.info(
                    "[agent %s] Funds sufficient again: %s available",
                    self.agent_id, funds.available_balance,
                )
                changed = await self._apply(AgentEvent.FUNDS_SUFFICIENT)
            else:
                changed = False

            if not changed:
                await self._persist()
            return changed

    async def set_error(self, error: str) -> None:
        async with self._lock:
            self._last_error = error
            self._last_update = utcnow()
            logger.error("[agent %s] %s", self.agent_id, error)
            await self._persist()

    async def clear_error(self) -> None:
        async with self._lock:
            self._last_error = None
            self._last_update = utcnow()
            await self._persist()

    # ── internals ─────────────────────────────────────────────────────────────

    async def _apply(self, event: AgentEvent) -> bool:
        previous = self._state
        target = next_state(previous, event)
        now = utcnow()
        self._last_update = now

        if target == previous:
            logger.debug("[agent %s] %s ignored in state %s", self.agent_id, event, previous)
            return False

        self._state = target
        self._state_entered_at = now
        self._history.append((target, now))
        logger.info("[agent %s] %s: %s → %s", self.agent_id, event, previous, target)

        # Saved before anyone is told about it
        await self._persist()
        await self.state_changes.notify(self.get_status())
        return True

    async def _persist(self) -> None:
        try:
            await self._persistence.save_state(self.agent_id, self.get_status())
        except PersistenceError as exc:
            logger.error("[agent %s] Failed to persist state: %s", self.agent_id, exc)
