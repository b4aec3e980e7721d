"""
FastAPI control surface for the engine host.

Every route answers ``{"success": ..., "result" | "error": ...}``.  Engine
failures are translated to status codes in one place so the handlers stay
thin.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..animation.export import AnimationExporter
from ..config import HostConfig
from ..errors import CommandError, ConnectionError, EngineError, ExportError
from ..runtime.pool import InstancePool
from . import schemas

LOG = logging.getLogger(__name__)


def status_for(exc: EngineError) -> int:
    if isinstance(exc, ConnectionError):
        return 503
    if isinstance(exc, CommandError):
        return 422
    if isinstance(exc, ExportError):
        return 500
    return 500


def _ok(result: Any) -> dict:
    return {"success": True, "result": result}


def create_app(
    *,
    pool: InstancePool,
    exporter: AnimationExporter,
    config: Optional[HostConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    host_config = config or HostConfig()

    app = FastAPI(title="ggbhost API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def _engine_error(_request: Request, exc: EngineError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            LOG.error("Request failed: %s", exc)
        else:
            LOG.info("Request rejected: %s", exc)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def _value_error(_request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "profile": host_config.profile, "pool": pool.stats()}

    @app.get("/pool/stats")
    async def pool_stats() -> dict:
        return _ok(pool.stats())

    @app.post("/pool/warmup")
    async def pool_warmup(payload: schemas.WarmupRequest) -> dict:
        return _ok(await pool.warm_up(payload.count))

    @app.post("/commands")
    async def run_command(payload: schemas.CommandRequest) -> JSONResponse:
        instance = await pool.get_default_instance()
        outcome = await instance.eval_command(payload.command)
        return JSONResponse(status_code=200 if outcome.success else 422, content=outcome.to_dict())

    @app.get("/objects/{name}")
    async def object_info(name: str) -> dict:
        instance = await pool.get_default_instance()
        info = await instance.get_object_info(name)
        return _ok(info.to_dict() if info is not None else None)

    @app.post("/export/png")
    async def export_png(payload: schemas.RasterExportRequest) -> dict:
        instance = await pool.get_default_instance()
        data = await instance.export_raster(
            scale=payload.scale,
            transparent=payload.transparent,
            dpi=payload.dpi,
            width=payload.width,
            height=payload.height,
        )
        return _ok({"format": "png", "data": data})

    @app.post("/export/svg")
    async def export_svg() -> dict:
        instance = await pool.get_default_instance()
        return _ok({"format": "svg", "data": await instance.export_vector()})

    @app.post("/export/pdf")
    async def export_pdf() -> dict:
        instance = await pool.get_default_instance()
        return _ok({"format": "pdf", "data": await instance.export_pdf()})

    @app.post("/export/animation")
    async def export_animation(payload: schemas.AnimationExportRequest) -> dict:
        result = await exporter.export_animation(payload.to_job())
        return _ok(result.to_dict())

    return app


__all__ = ["create_app", "status_for"]
