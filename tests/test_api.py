"""Tests for the REST surface, served in-process through httpx.ASGITransport."""
from __future__ import annotations

from decimal import Decimal

import httpx
import pytest

from conftest import make_config
from lpcruise.api import create_app


@pytest.fixture
async def api(cruise, chain):
    chain.balances["wallet-1"] = Decimal("1")
    await cruise.register_agent("a1", make_config())
    transport = httpx.ASGITransport(app=create_app(cruise))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_health(api):
    resp = await api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


async def test_status_lists_agents(api):
    resp = await api.get("/status")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["agents"][0]["agent_id"] == "a1"
    assert body["data"]["agents"][0]["state"] == "running"


async def test_metrics(api):
    resp = await api.get("/metrics")
    assert resp.status_code == 200
    assert resp.json()["data"]["registered_agents"] == 1

    resp = await api.get("/metrics/a1")
    assert resp.status_code == 200
    assert resp.json()["data"]["tasks"]["total"] == 3
    assert resp.json()["data"]["returns"]["total"] == 0


async def test_health_check_endpoint(api):
    resp = await api.post("/agents/a1/health-check")
    assert resp.status_code == 200
    assert resp.json()["data"]["health_score"] > 0


async def test_unknown_agent_is_404(api):
    assert (await api.get("/metrics/ghost")).status_code == 404
    resp = await api.post("/agents/ghost/optimize")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


async def test_stopped_agent_is_409(api, cruise):
    await cruise.stop_agent("a1")
    resp = await api.post("/agents/a1/optimize")
    assert resp.status_code == 409
    assert resp.json()["data"]["state"] == "stopped"
