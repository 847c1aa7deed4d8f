from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import OrchestratorConfig
from .config_loader import list_env_overrides
from .service import RuntimeOrchestrator, build_orchestrator

logger = logging.getLogger("runtimeworks.app")

_ERROR_STATUS: dict[str, int] = {
    "rate-limited": 429,
    "shutting-down": 503,
    "installation-in-progress": 409,
    "not-installed": 409,
    "manual-install-required": 501,
    "unsupported-platform": 501,
    "start-timeout": 504,
    "request-timeout": 504,
    "model-pull-failed": 502,
    "runtime-request-failed": 502,
    "warmup-failed": 502,
}


class PullRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=256)


class WarmupRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=256)
    force: bool = Field(False, description="Probe again even if already warm.")


class ShutdownRequest(BaseModel):
    force: bool = False


def _respond(result: dict[str, Any]) -> JSONResponse:
    if result.get("success", True):
        return JSONResponse(content=result)
    status = _ERROR_STATUS.get(str(result.get("error_type")), 500)
    headers = {}
    if "retry_after" in result:
        headers["Retry-After"] = str(max(1, round(result["retry_after"])))
    return JSONResponse(status_code=status, content=result, headers=headers)


def _orchestrator(request: Request) -> RuntimeOrchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator: Optional[RuntimeOrchestrator] = None) -> FastAPI:
    """Build the control API; the orchestrator is created on startup if omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        orch = orchestrator or build_orchestrator()
        app.state.orchestrator = orch
        await orch.init()
        try:
            yield
        finally:
            await orch.aclose()

    app = FastAPI(title="runtimeworks", version="0.1", lifespan=lifespan)

    @app.get("/v1/health")
    async def health():
        return {"status": "ok"}

    @app.get("/v1/runtime/status")
    async def runtime_status(request: Request):
        return _respond(await _orchestrator(request).get_status())

    @app.get("/v1/runtime/health")
    async def runtime_health(request: Request):
        return await _orchestrator(request).health_check()

    @app.post("/v1/runtime/install")
    async def runtime_install(request: Request):
        return _respond(await _orchestrator(request).install())

    @app.post("/v1/runtime/start")
    async def runtime_start(request: Request):
        return _respond(await _orchestrator(request).start())

    @app.post("/v1/runtime/ensure-ready")
    async def runtime_ensure_ready(request: Request):
        return _respond(await _orchestrator(request).ensure_ready())

    @app.post("/v1/runtime/sync")
    async def runtime_sync(request: Request):
        orch = _orchestrator(request)
        await orch.sync_state()
        return {"success": True, "state": orch.install_state.to_dict()}

    @app.post("/v1/runtime/shutdown")
    async def runtime_shutdown(
        request: Request, payload: Optional[ShutdownRequest] = None
    ):
        force = payload.force if payload else False
        return _respond(await _orchestrator(request).shutdown(force))

    @app.get("/v1/models")
    async def models(request: Request):
        return _respond(await _orchestrator(request).get_models())

    @app.get("/v1/models/suggestions")
    async def model_suggestions(request: Request):
        return _respond(await _orchestrator(request).get_model_suggestions())

    @app.get("/v1/models/installed")
    async def model_installed(request: Request, model: str = Query(..., min_length=1)):
        return _respond(await _orchestrator(request).is_model_installed(model))

    @app.post("/v1/models/pull")
    async def model_pull(request: Request, payload: PullRequest):
        return _respond(await _orchestrator(request).pull_model(payload.model))

    @app.post("/v1/models/warmup")
    async def model_warmup(request: Request, payload: WarmupRequest):
        result = await _orchestrator(request).warm_up_model(
            payload.model, payload.force
        )
        return _respond(result)

    @app.post("/v1/models/warmup/auto")
    async def model_warmup_auto(request: Request):
        return _respond(await _orchestrator(request).auto_warm_up())

    @app.get("/v1/models/warmup")
    async def model_warmup_status(request: Request):
        return _respond(await _orchestrator(request).get_warmup_status())

    @app.get("/v1/events")
    async def event_stream(request: Request):
        bus = _orchestrator(request).events

        async def _lines():
            async for event in bus.listen():
                if await request.is_disconnected():
                    break
                yield json.dumps(event.to_dict()) + "\n"

        return StreamingResponse(_lines(), media_type="application/x-ndjson")

    @app.get("/v1/config")
    async def read_config(request: Request):
        cfg: OrchestratorConfig = _orchestrator(request).cfg
        return {
            "config": asdict(cfg),
            "env_overrides": list_env_overrides(),
        }

    return app


def main() -> None:  # pragma: no cover
    import uvicorn

    from runtimeworks.logging_utils import configure_logging

    configure_logging("runtimeworks_api")
    cfg = OrchestratorConfig.load()
    uvicorn.run(create_app(build_orchestrator(cfg)), host=cfg.host, port=cfg.port)


if __name__ == "__main__":  # pragma: no cover
    main()
