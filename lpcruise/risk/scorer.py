"""Funds-based health scoring.

Score starts at 5.0 and loses points for a thin free balance and for having
everything in a single position; clamped to [0, 5]. Lower = riskier.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Callable

from lpcruise.core.types import AgentConfig, FundsStatus, RiskLevel, RiskTrigger

MAX_SCORE = 5.0
MIN_AVAILABLE_RATIO = 0.1
# Points lost per unit of ratio shortfall (0.05 short costs one point)
RATIO_PENALTY = 20.0
CONCENTRATION_PENALTY = 1.0

Scorer = Callable[[FundsStatus], tuple[float, tuple[RiskTrigger, ...]]]


def available_ratio(funds: FundsStatus) -> float:
    if funds.total_value <= Decimal("0"):
        return 0.0
    return float(funds.available_balance / funds.total_value)


def score(funds: FundsStatus) -> tuple[float, tuple[RiskTrigger, ...]]:
    """Return (health score, triggers considered)."""
    ratio = available_ratio(funds)
    health = MAX_SCORE
    if ratio < MIN_AVAILABLE_RATIO:
        health -= (MIN_AVAILABLE_RATIO - ratio) * RATIO_PENALTY
    if len(funds.positions) == 1:
        health -= CONCENTRATION_PENALTY

    triggers = (
        RiskTrigger("available_ratio", ratio, MIN_AVAILABLE_RATIO),
        RiskTrigger("position_concentration", float(len(funds.positions)), 2.0),
    )
    return max(0.0, min(MAX_SCORE, health)), triggers


def classify(health_score: float, config: AgentConfig) -> RiskLevel:
    if health_score <= config.emergency_threshold:
        return RiskLevel.HIGH
    if health_score <= config.medium_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
