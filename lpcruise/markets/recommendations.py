"""Pool recommendation service client.

The recommendation service scores pools on its own (volume, depth, fee
yield, volatility); here we only consume its ranked output.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Sequence

import httpx

from lpcruise.config import settings
from lpcruise.finance.transactions import TargetBin

logger = logging.getLogger(__name__)


class RecommendationAction(StrEnum):
    ADD = "add"
    HOLD = "hold"
    REDUCE = "reduce"
    REBALANCE = "rebalance"


@dataclass(frozen=True)
class PoolRecommendation:
    pool_id: str
    health_score: float
    target_bins: tuple[TargetBin, ...] = ()
    action: RecommendationAction = RecommendationAction.HOLD
    # Fraction to reduce by (REDUCE) or scale to (REBALANCE); None = service default
    adjustment_pct: float | None = None


class RecommendationService(ABC):
    @abstractmethod
    async def get_recommendations(self) -> Sequence[PoolRecommendation]:
        """Ranked best-first. Empty on failure."""
        ...

    async def get_pool(self, pool_id: str) -> PoolRecommendation | None:
        for rec in await self.get_recommendations():
            if rec.pool_id == pool_id:
                return rec
        return None


class HttpRecommendationService(RecommendationService):
    def __init__(self, url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.url = url or settings.recommendations_url
        self._client = client

    async def get_recommendations(self) -> list[PoolRecommendation]:
        try:
            if self._client is not None:
                resp = await self._client.get(self.url)
            else:
                async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                    resp = await client.get(self.url)
            resp.raise_for_status()
            data = resp.json()
        except Exception as exc:
            logger.warning("Pool recommendations fetch failed: %s", exc)
            return []

        rows = data.get("pools", []) if isinstance(data, dict) else data
        recs = [r for r in (self._to_rec(row) for row in rows) if r is not None]
        recs.sort(key=lambda r: r.health_score, reverse=True)
        logger.info("Recommendations: %d pools", len(recs))
        return recs

    def _to_rec(self, row: dict) -> PoolRecommendation | None:
        try:
            bins = tuple(
                TargetBin(bin_id=int(b["bin_id"]), percentage=float(b["percentage"]))
                for b in row.get("target_bins") or ()
            )
            adjustment = row.get("adjustment_pct")
            return PoolRecommendation(
                pool_id=row["pool_id"],
                health_score=float(row["health_score"]),
                target_bins=bins,
                action=RecommendationAction(row.get("action", RecommendationAction.HOLD)),
                adjustment_pct=float(adjustment) if adjustment is not None else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("Skipping malformed recommendation %r: %s", row, exc)
            return None
