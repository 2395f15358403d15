"""lpcruise entrypoint.

Wires together all subsystems and starts:
  1. SQLite agent snapshot store
  2. Chain adapters (RPC, positions indexer, builder, signer)
  3. Funds manager, transaction executor, risk controller
  4. Recommendation client and position optimizer
  5. Cruise orchestrator (restores saved agents, then the bootstrap file)
  6. FastAPI control server
"""
from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import uvicorn
from pydantic import TypeAdapter, ValidationError
from rich.logging import RichHandler

from lpcruise.api import VERSION, create_app
from lpcruise.config import settings
from lpcruise.core.cruise import CruiseModule
from lpcruise.core.metrics import CruiseMetrics
from lpcruise.core.scheduler import ScheduledTaskManager
from lpcruise.core.types import AgentConfig
from lpcruise.finance.executor import TransactionExecutor
from lpcruise.finance.funds import FundsManager
from lpcruise.finance.rpc import (
    HttpTransactionBuilder,
    RemoteSigner,
    RpcChainClient,
    RpcTransactionSender,
)
from lpcruise.markets.optimizer import RecommendationOptimizer
from lpcruise.markets.recommendations import HttpRecommendationService
from lpcruise.memory.store import SqliteStatePersistence
from lpcruise.risk.controller import RiskController

# ── logging ───────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("lpcruise")

_config_adapter = TypeAdapter(AgentConfig)


# ── bootstrap file ────────────────────────────────────────────────────────────


def load_agents_file(path: Path) -> list[tuple[str, AgentConfig]]:
    """Parse ``[{"agent_id": ..., "config": {...}}, ...]``; bad entries are skipped."""
    entries: list[dict[str, Any]] = json.loads(path.read_text())
    agents = []
    for entry in entries:
        try:
            raw = dict(entry["config"])
            raw.setdefault("max_positions", settings.default_max_positions)
            raw.setdefault("health_check_interval_minutes", settings.health_check_interval_minutes)
            raw.setdefault("market_check_interval_minutes", settings.market_check_interval_minutes)
            raw.setdefault("optimization_interval_hours", settings.optimization_interval_hours)
            agents.append((entry["agent_id"], _config_adapter.validate_python(raw)))
        except (KeyError, TypeError, ValidationError) as exc:
            logger.error("Skipping bad agent entry in %s: %s", path, exc)
    return agents


# ── startup ───────────────────────────────────────────────────────────────────


async def startup() -> tuple[CruiseModule, SqliteStatePersistence, list]:
    logger.info("=" * 60)
    logger.info("  lpcruise v%s", VERSION)
    logger.info("  RPC:            %s", settings.rpc_url)
    logger.info("  Snapshot DB:    %s", settings.sqlite_path)
    logger.info("  Risk interval:  %d s", settings.risk_check_interval_seconds)
    logger.info("=" * 60)

    # 1. Agent snapshots
    persistence = SqliteStatePersistence()
    await persistence.init()

    # 2. Chain adapters
    chain = RpcChainClient()
    builder = HttpTransactionBuilder()
    signer = RemoteSigner()
    sender = RpcTransactionSender()

    # 3. Money & risk
    funds = FundsManager(chain)
    executor = TransactionExecutor(builder, signer, sender)
    risk = RiskController(funds, executor)

    # 4. Pool intelligence
    recommendations = HttpRecommendationService()
    optimizer = RecommendationOptimizer(recommendations)

    # 5. Orchestrator
    cruise = CruiseModule(
        persistence=persistence,
        funds=funds,
        executor=executor,
        risk=risk,
        scheduler=ScheduledTaskManager(),
        recommendations=recommendations,
        optimizer=optimizer,
        metrics=CruiseMetrics(),
    )
    await cruise.restore_agents()

    if settings.agents_file is not None:
        if settings.agents_file.exists():
            for agent_id, config in load_agents_file(settings.agents_file):
                await cruise.register_agent(agent_id, config)
        else:
            logger.warning("Agents file %s not found", settings.agents_file)

    await cruise.start()
    return cruise, persistence, [chain, builder, signer, sender]


async def run_server(cruise: CruiseModule) -> None:
    config = uvicorn.Config(
        create_app(cruise),
        host=settings.api_host,
        port=settings.api_port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main() -> None:
    cruise, persistence, adapters = await startup()

    tasks = [asyncio.create_task(run_server(cruise), name="api-server")]

    # Graceful shutdown on SIGINT/SIGTERM
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: [t.cancel() for t in tasks])

    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Shutting down gracefully...")
    finally:
        for task in tasks:
            task.cancel()
        await cruise.stop()
        for adapter in adapters:
            await adapter.close()
        await persistence.close()
        logger.info("Goodbye.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
