"""REST surface over the cruise orchestrator.

GET  /status                          → all agents, scheduler counts
GET  /metrics                         → global health-check / optimization metrics
GET  /metrics/{agent_id}              → per-agent metrics
POST /agents/{agent_id}/health-check  → run a health check now
POST /agents/{agent_id}/optimize      → run an optimization now

Each route forwards to CruiseModule and returns {success, message, data}.
"""
from __future__ import annotations

from fastapi import APIRouter, FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from lpcruise.core.cruise import CruiseModule
from lpcruise.core.types import OperationResult, ResultKind

VERSION = "0.1.0"

_STATUS_CODES = {
    ResultKind.OK: 200,
    ResultKind.NOT_REGISTERED: 404,
    ResultKind.NOT_RUNNING: 409,
    ResultKind.FAILED: 500,
}


def to_response(result: OperationResult) -> JSONResponse:
    return JSONResponse(
        status_code=_STATUS_CODES[result.kind],
        content=jsonable_encoder(
            {"success": result.success, "message": result.message, "data": result.data}
        ),
    )


def build_router(cruise: CruiseModule) -> APIRouter:
    router = APIRouter(tags=["cruise"])

    @router.get("/status")
    async def status() -> JSONResponse:
        return to_response(cruise.get_status())

    @router.get("/metrics")
    async def metrics() -> JSONResponse:
        return to_response(cruise.get_metrics())

    @router.get("/metrics/{agent_id}")
    async def agent_metrics(agent_id: str) -> JSONResponse:
        return to_response(await cruise.get_agent_metrics(agent_id))

    @router.post("/agents/{agent_id}/health-check")
    async def health_check(agent_id: str) -> JSONResponse:
        return to_response(await cruise.perform_health_check(agent_id))

    @router.post("/agents/{agent_id}/optimize")
    async def optimize(agent_id: str) -> JSONResponse:
        return to_response(await cruise.optimize_positions(agent_id))

    return router


def create_app(cruise: CruiseModule, lifespan=None) -> FastAPI:
    app = FastAPI(
        title="lpcruise",
        description="LP agent orchestration engine",
        version=VERSION,
        lifespan=lifespan,
    )
    app.include_router(build_router(cruise))

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": VERSION, "running": cruise.is_running}

    return app
