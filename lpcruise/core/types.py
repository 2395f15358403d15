"""Domain types shared by the state machine, funds manager, risk side and cruise module."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any, Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentState(StrEnum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING = "waiting"
    PARTIAL_REDUCING = "partial_reducing"
    EMERGENCY_EXIT = "emergency_exit"
    STOPPED = "stopped"


class AgentEvent(StrEnum):
    START = "start"
    STOP = "stop"
    FUNDS_LOW = "funds_low"
    FUNDS_SUFFICIENT = "funds_sufficient"
    RISK_MEDIUM = "risk_medium"
    RISK_HIGH = "risk_high"
    RISK_RESOLVED = "risk_resolved"
    USER_EMERGENCY = "user_emergency"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    # Only produced when the assessment itself could not be computed
    CRITICAL = "critical"


class RiskTolerance(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class AgentConfig:
    """Immutable per-agent settings, fixed at registration."""

    name: str
    wallet_id: str
    max_positions: int = 5
    min_balance: Decimal = Decimal("0.1")
    target_health_score: float = 4.0
    risk_tolerance: RiskTolerance = RiskTolerance.MEDIUM
    health_check_interval_minutes: int = 30
    market_check_interval_minutes: int = 15
    optimization_interval_hours: int = 24
    # Health score at or below which an agent is treated as high risk
    emergency_threshold: float = 1.5
    # Upper bound of the medium-risk band (emergency_threshold, medium_threshold]
    medium_threshold: float = 2.5
    max_drawdown: float = 0.15


@dataclass(frozen=True)
class Position:
    """One open LP position."""

    pool_id: str
    value_native: Decimal = Decimal("0")
    value_usd: Decimal = Decimal("0")


@dataclass(frozen=True)
class FundsStatus:
    total_value: Decimal
    available_balance: Decimal
    positions: tuple[Position, ...] = ()
    last_update: datetime = field(default_factory=utcnow)

    @classmethod
    def create(
        cls,
        available_balance: Decimal,
        positions: Sequence[Position] = (),
        last_update: datetime | None = None,
    ) -> "FundsStatus":
        """Build a snapshot whose total is always balance + Σ position value."""
        positions = tuple(positions)
        total = available_balance + sum((p.value_native for p in positions), Decimal("0"))
        return cls(
            total_value=total,
            available_balance=available_balance,
            positions=positions,
            last_update=last_update or utcnow(),
        )

    @classmethod
    def empty(cls) -> "FundsStatus":
        return cls.create(Decimal("0"))

    @property
    def pool_ids(self) -> set[str]:
        return {p.pool_id for p in self.positions}


@dataclass(frozen=True)
class RiskTrigger:
    type: str
    value: float
    threshold: float


@dataclass(frozen=True)
class RiskAssessment:
    agent_id: str
    timestamp: datetime
    health_score: float
    risk_level: RiskLevel
    triggers: tuple[RiskTrigger, ...] = ()


@dataclass
class AgentStatus:
    """Snapshot of one agent; mutated only by its AgentStateMachine."""

    agent_id: str
    state: AgentState
    config: AgentConfig
    funds: FundsStatus = field(default_factory=FundsStatus.empty)
    last_update: datetime = field(default_factory=utcnow)
    last_error: str | None = None


class ResultKind(StrEnum):
    OK = "ok"
    NOT_REGISTERED = "not_registered"
    NOT_RUNNING = "not_running"
    FAILED = "failed"


@dataclass
class OperationResult:
    """What every public orchestrator method returns instead of raising."""

    success: bool
    message: str = ""
    kind: ResultKind = ResultKind.OK
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "OperationResult":
        return cls(True, message, ResultKind.OK, data)

    @classmethod
    def fail(cls, message: str, kind: ResultKind = ResultKind.FAILED, **data: Any) -> "OperationResult":
        return cls(False, message, kind, data)
