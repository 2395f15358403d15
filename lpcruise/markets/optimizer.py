"""Position optimizer — turns pool recommendations into an action plan.

Plan order: reductions, then rebalances, then additions into the best
unheld pools with whatever capital is left above the agent's minimum
balance.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum

from lpcruise.config import settings
from lpcruise.core.types import AgentConfig, FundsStatus, Position
from lpcruise.finance.transactions import TargetBin
from lpcruise.markets.recommendations import (
    PoolRecommendation,
    RecommendationAction,
    RecommendationService,
)

logger = logging.getLogger(__name__)

DEFAULT_REDUCTION = 0.3
# Rough per-action health gain used to rank plans
IMPROVEMENT_PER_ACTION = 0.2


class ActionType(StrEnum):
    ADD = "add"
    REMOVE = "remove"
    ADJUST = "adjust"


@dataclass(frozen=True)
class OptimizationAction:
    type: ActionType
    pool_id: str
    amount: Decimal = Decimal("0")
    current_amount: Decimal | None = None
    target_amount: Decimal | None = None
    target_bins: tuple[TargetBin, ...] = ()


@dataclass
class OptimizationPlan:
    agent_id: str
    total_value: Decimal
    actions: list[OptimizationAction] = field(default_factory=list)
    expected_health_improvement: float = 0.0


class PositionOptimizer(ABC):
    @abstractmethod
    async def identify_unhealthy_positions(
        self, agent_id: str, funds: FundsStatus
    ) -> list[Position]:
        ...

    @abstractmethod
    async def calculate_optimal_positions(
        self, agent_id: str, funds: FundsStatus, config: AgentConfig
    ) -> OptimizationPlan | None:
        """None when no plan could be computed."""
        ...


class RecommendationOptimizer(PositionOptimizer):
    def __init__(
        self,
        recommendations: RecommendationService,
        min_health_score: float | None = None,
    ) -> None:
        self._recommendations = recommendations
        self.min_health_score = (
            settings.min_pool_health_score if min_health_score is None else min_health_score
        )

    def _is_unhealthy(self, rec: PoolRecommendation) -> bool:
        return rec.health_score < self.min_health_score or rec.action == RecommendationAction.REDUCE

    async def identify_unhealthy_positions(
        self, agent_id: str, funds: FundsStatus
    ) -> list[Position]:
        """Held positions whose pool scores under the minimum or is flagged reduce, worst first."""
        if not funds.positions:
            return []
        by_pool = {r.pool_id: r for r in await self._recommendations.get_recommendations()}
        unhealthy = [
            p for p in funds.positions
            if p.pool_id in by_pool and self._is_unhealthy(by_pool[p.pool_id])
        ]
        unhealthy.sort(key=lambda p: by_pool[p.pool_id].health_score)
        if unhealthy:
            logger.info(
                "[agent %s] %d unhealthy position(s): %s",
                agent_id, len(unhealthy), ", ".join(p.pool_id for p in unhealthy),
            )
        return unhealthy

    async def calculate_optimal_positions(
        self, agent_id: str, funds: FundsStatus, config: AgentConfig
    ) -> OptimizationPlan | None:
        plan = OptimizationPlan(agent_id=agent_id, total_value=funds.total_value)
        if funds.available_balance <= config.min_balance:
            logger.info(
                "[agent %s] Not optimizing: %s available, %s minimum",
                agent_id, funds.available_balance, config.min_balance,
            )
            return plan

        try:
            recs = list(await self._recommendations.get_recommendations())
        except Exception as exc:
            logger.error("[agent %s] Could not load recommendations: %s", agent_id, exc)
            return None
        by_pool = {r.pool_id: r for r in recs}
        held = funds.pool_ids

        freed = Decimal("0")
        for position in funds.positions:
            rec = by_pool.get(position.pool_id)
            if rec is None:
                continue
            if self._is_unhealthy(rec):
                share = Decimal(str(rec.adjustment_pct or DEFAULT_REDUCTION))
                amount = position.value_native * share
                freed += amount
                plan.actions.append(OptimizationAction(ActionType.REMOVE, position.pool_id, amount))
            elif rec.action == RecommendationAction.REBALANCE and rec.target_bins:
                target = position.value_native * Decimal(str(rec.adjustment_pct or 1.0))
                plan.actions.append(
                    OptimizationAction(
                        ActionType.ADJUST,
                        position.pool_id,
                        current_amount=position.value_native,
                        target_amount=target,
                        target_bins=rec.target_bins,
                    )
                )

        capital = funds.available_balance + freed - config.min_balance
        slots = config.max_positions - len(held)
        if capital > 0 and slots > 0:
            candidates = sorted(
                (r for r in recs if r.pool_id not in held and not self._is_unhealthy(r)),
                key=lambda r: r.health_score,
                reverse=True,
            )[:slots]
            if candidates:
                each = capital / len(candidates)
                plan.actions.extend(
                    OptimizationAction(ActionType.ADD, r.pool_id, each, target_bins=r.target_bins)
                    for r in candidates
                )

        plan.expected_health_improvement = len(plan.actions) * IMPROVEMENT_PER_ACTION
        logger.info(
            "[agent %s] Optimization plan: %d action(s), expected improvement %.1f",
            agent_id, len(plan.actions), plan.expected_health_improvement,
        )
        return plan
