"""Cruise metrics — counters and timings for health checks and optimizations."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class MetricsSink(ABC):
    """Write-only sink the orchestrator reports into."""

    @abstractmethod
    def record_health_check(self, agent_id: str, success: bool, duration_seconds: float) -> None:
        ...

    @abstractmethod
    def record_optimization(self, agent_id: str, success: bool, duration_seconds: float) -> None:
        ...

    @abstractmethod
    def set_agent_count(self, count: int) -> None:
        ...

    @abstractmethod
    def set_task_counts(self, total: int, active: int) -> None:
        ...

    def forget_agent(self, agent_id: str) -> None:
        pass

    def snapshot(self) -> dict[str, Any]:
        return {}

    def agent_snapshot(self, agent_id: str) -> dict[str, Any] | None:
        return None


@dataclass
class _Counter:
    total: int = 0
    success: int = 0
    failed: int = 0
    total_duration: float = 0.0
    last_duration: float = 0.0
    last_at: float | None = None

    def record(self, success: bool, duration: float) -> None:
        self.total += 1
        if success:
            self.success += 1
        else:
            self.failed += 1
        self.total_duration += duration
        self.last_duration = duration
        self.last_at = time.time()

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "avg_duration_seconds": self.total_duration / self.total if self.total else 0.0,
            "last_duration_seconds": self.last_duration,
            "last_at": self.last_at,
        }


class CruiseMetrics(MetricsSink):
    """In-memory sink; ``snapshot`` backs the /metrics endpoint."""

    def __init__(self) -> None:
        self._started = time.monotonic()
        self._health = _Counter()
        self._optimizations = _Counter()
        self._agents: dict[str, tuple[_Counter, _Counter]] = {}
        self.registered_agents = 0
        self.tasks_total = 0
        self.tasks_active = 0

    def _agent(self, agent_id: str) -> tuple[_Counter, _Counter]:
        return self._agents.setdefault(agent_id, (_Counter(), _Counter()))

    def record_health_check(self, agent_id: str, success: bool, duration_seconds: float) -> None:
        self._health.record(success, duration_seconds)
        self._agent(agent_id)[0].record(success, duration_seconds)

    def record_optimization(self, agent_id: str, success: bool, duration_seconds: float) -> None:
        self._optimizations.record(success, duration_seconds)
        self._agent(agent_id)[1].record(success, duration_seconds)

    def set_agent_count(self, count: int) -> None:
        self.registered_agents = count

    def set_task_counts(self, total: int, active: int) -> None:
        self.tasks_total = total
        self.tasks_active = active

    def forget_agent(self, agent_id: str) -> None:
        self._agents.pop(agent_id, None)

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": time.monotonic() - self._started,
            "registered_agents": self.registered_agents,
            "tasks": {"total": self.tasks_total, "active": self.tasks_active},
            "health_checks": self._health.as_dict(),
            "optimizations": self._optimizations.as_dict(),
        }

    def agent_snapshot(self, agent_id: str) -> dict[str, Any] | None:
        counters = self._agents.get(agent_id)
        if counters is None:
            return None
        health, optimizations = counters
        return {
            "agent_id": agent_id,
            "health_checks": health.as_dict(),
            "optimizations": optimizations.as_dict(),
        }
