"""Time-windowed risk escalation for one agent.

A single bad sample never moves an agent. Scores at or below the emergency
threshold must persist for the high-risk window before RISK_HIGH fires, and
scores in the medium band for the medium-risk window before RISK_MEDIUM.
Recovery out of PARTIAL_REDUCING is immediate. Windows are measured on the
assessment timestamps, not the wall clock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from lpcruise.config import settings
from lpcruise.core.types import AgentConfig, AgentEvent, AgentState, RiskAssessment

logger = logging.getLogger(__name__)


class RiskEscalation:
    def __init__(
        self,
        agent_id: str,
        config: AgentConfig,
        high_window: timedelta | None = None,
        medium_window: timedelta | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.config = config
        self.high_window = high_window or timedelta(seconds=settings.high_risk_window_seconds)
        self.medium_window = medium_window or timedelta(seconds=settings.medium_risk_window_seconds)
        self.high_risk_start: datetime | None = None
        self.medium_risk_start: datetime | None = None
        self._high_fired = False

    def observe(self, assessment: RiskAssessment, state: AgentState) -> AgentEvent | None:
        """Feed one sample; return the event to fire, if any."""
        score = assessment.health_score
        now = assessment.timestamp

        if score <= self.config.emergency_threshold:
            if self.high_risk_start is None:
                self.high_risk_start = now
                logger.warning(
                    "[agent %s] High risk episode started (score %.2f)", self.agent_id, score
                )
            if not self._high_fired and now - self.high_risk_start >= self.high_window:
                self._high_fired = True
                logger.error(
                    "[agent %s] High risk held for %s, escalating",
                    self.agent_id, now - self.high_risk_start,
                )
                return AgentEvent.RISK_HIGH
            # The medium window keeps running through a high dip
            return None

        self.high_risk_start = None
        self._high_fired = False

        if score <= self.config.medium_threshold:
            if self.medium_risk_start is None:
                self.medium_risk_start = now
                logger.info(
                    "[agent %s] Medium risk episode started (score %.2f)", self.agent_id, score
                )
            # Only RUNNING agents reduce; elsewhere the window stays armed
            if state == AgentState.RUNNING and now - self.medium_risk_start >= self.medium_window:
                logger.warning(
                    "[agent %s] Medium risk held for %s, escalating",
                    self.agent_id, now - self.medium_risk_start,
                )
                return AgentEvent.RISK_MEDIUM
            return None

        self.medium_risk_start = None
        if state == AgentState.PARTIAL_REDUCING:
            logger.info("[agent %s] Risk resolved (score %.2f)", self.agent_id, score)
            return AgentEvent.RISK_RESOLVED
        return None

    def reset(self) -> None:
        self.high_risk_start = None
        self.medium_risk_start = None
        self._high_fired = False
