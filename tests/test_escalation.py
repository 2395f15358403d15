"""Tests for debounced risk escalation windows."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_config
from lpcruise.core.types import AgentEvent, AgentState, RiskAssessment, RiskLevel
from lpcruise.risk.escalation import RiskEscalation

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def sample(minute: float, score: float) -> RiskAssessment:
    return RiskAssessment(
        agent_id="a1",
        timestamp=T0 + timedelta(minutes=minute),
        health_score=score,
        risk_level=RiskLevel.LOW,
    )


@pytest.fixture
def escalation() -> RiskEscalation:
    return RiskEscalation("a1", make_config(emergency_threshold=1.5, medium_threshold=2.5))


def test_high_risk_fires_only_after_five_minutes(escalation):
    events = [escalation.observe(sample(m, 1.0), AgentState.RUNNING) for m in range(6)]
    # samples at 0..4 minutes cover less than the window
    assert events[:5] == [None] * 5
    assert events[5] == AgentEvent.RISK_HIGH


def test_high_risk_fires_once_per_episode(escalation):
    events = [escalation.observe(sample(m, 1.0), AgentState.RUNNING) for m in range(20)]
    assert events.count(AgentEvent.RISK_HIGH) == 1


def test_recovery_sample_resets_high_window(escalation):
    for m in range(4):
        escalation.observe(sample(m, 1.0), AgentState.RUNNING)
    escalation.observe(sample(4, 2.0), AgentState.RUNNING)
    assert escalation.high_risk_start is None

    # The new episode needs its own five minutes
    events = [escalation.observe(sample(5 + m, 1.0), AgentState.RUNNING) for m in range(5)]
    assert AgentEvent.RISK_HIGH not in events
    assert escalation.observe(sample(10, 1.0), AgentState.RUNNING) == AgentEvent.RISK_HIGH


def test_second_sustained_episode_fires_again(escalation):
    first = [escalation.observe(sample(m, 1.0), AgentState.RUNNING) for m in range(6)]
    escalation.observe(sample(6, 4.0), AgentState.EMERGENCY_EXIT)
    second = [escalation.observe(sample(7 + m, 1.0), AgentState.EMERGENCY_EXIT) for m in range(6)]
    assert first.count(AgentEvent.RISK_HIGH) == 1
    assert second.count(AgentEvent.RISK_HIGH) == 1


def test_short_medium_dip_never_escalates(escalation):
    events = [escalation.observe(sample(m, 2.0), AgentState.RUNNING) for m in range(10)]
    events.append(escalation.observe(sample(10, 4.0), AgentState.RUNNING))
    assert AgentEvent.RISK_MEDIUM not in events
    assert escalation.medium_risk_start is None


def test_sustained_medium_risk_fires_after_ten_minutes(escalation):
    events = [escalation.observe(sample(m, 2.0), AgentState.RUNNING) for m in range(11)]
    assert events[:10] == [None] * 10
    assert events[10] == AgentEvent.RISK_MEDIUM


def test_high_dip_does_not_reset_medium_window(escalation):
    escalation.observe(sample(0, 2.0), AgentState.RUNNING)
    escalation.observe(sample(3, 1.0), AgentState.RUNNING)
    assert escalation.medium_risk_start == T0
    assert escalation.observe(sample(10, 2.0), AgentState.RUNNING) == AgentEvent.RISK_MEDIUM


def test_recovery_from_partial_reducing_is_immediate(escalation):
    assert escalation.observe(sample(0, 2.6), AgentState.PARTIAL_REDUCING) == AgentEvent.RISK_RESOLVED


def test_healthy_sample_while_running_fires_nothing(escalation):
    assert escalation.observe(sample(0, 4.5), AgentState.RUNNING) is None


def test_boundaries_are_inclusive(escalation):
    escalation.observe(sample(0, 1.5), AgentState.RUNNING)
    assert escalation.high_risk_start == T0
    escalation.observe(sample(1, 2.5), AgentState.RUNNING)
    assert escalation.high_risk_start is None
    assert escalation.medium_risk_start == T0 + timedelta(minutes=1)


def test_medium_window_stays_armed_outside_running(escalation):
    waiting = [escalation.observe(sample(m, 2.0), AgentState.WAITING) for m in range(11)]
    assert AgentEvent.RISK_MEDIUM not in waiting

    # Back to RUNNING with the dip still going: reduce right away
    assert escalation.observe(sample(11, 2.0), AgentState.RUNNING) == AgentEvent.RISK_MEDIUM


def test_medium_fires_again_after_recovery_while_dip_persists(escalation):
    for m in range(10):
        escalation.observe(sample(m, 2.0), AgentState.RUNNING)
    assert escalation.observe(sample(10, 2.0), AgentState.RUNNING) == AgentEvent.RISK_MEDIUM
    assert escalation.observe(sample(11, 2.0), AgentState.PARTIAL_REDUCING) is None
    assert escalation.observe(sample(12, 2.0), AgentState.RUNNING) == AgentEvent.RISK_MEDIUM
