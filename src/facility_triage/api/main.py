#!/usr/bin/env python3
# Copyright 2025 msq
from __future__ import annotations

import asyncio
import uuid
from contextlib import suppress
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware

from facility_triage.api import facilities as facilities_api
from facility_triage.config import AppConfig
from facility_triage.db.models import StoreRole
from facility_triage.db.store import StorePair, build_store_pair
from facility_triage.ingest import PublicFacilityFeed, seed_sample_data
from facility_triage.logging import configure_logging, set_trace_id, clear_trace_id  # 统一日志配置
from facility_triage.service import FacilityService

logger = structlog.get_logger(__name__)

app = FastAPI(title="Facility Triage API")

_stores: Optional[StorePair] = None
_sync_task: Optional[asyncio.Task[None]] = None


# ========== Trace-ID中间件：自动注入请求追踪ID ==========
class TraceIDMiddleware(BaseHTTPMiddleware):
    """
    为每个HTTP请求注入trace-id到日志上下文

    客户端传入 X-Trace-Id 时复用，否则生成 UUID；响应头回传同一个值。
    """

    async def dispatch(self, request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
        set_trace_id(trace_id)

        try:
            response = await call_next(request)
            response.headers["X-Trace-Id"] = trace_id
            return response
        finally:
            clear_trace_id()


app.add_middleware(TraceIDMiddleware)

# metrics
Instrumentator().instrument(app).expose(app)

app.include_router(facilities_api.router)


@app.get("/healthz")
async def healthz(request: Request) -> dict:
    service: Optional[FacilityService] = getattr(request.app.state, "facility_service", None)
    if service is None:
        return {"ok": False, "online": None}
    return {
        "ok": True,
        "online": service.sync.is_online,
        "admin_operation": service.sync.current_operation,
    }


@app.on_event("startup")
async def startup_event():
    global _stores
    global _sync_task

    cfg = AppConfig.load_from_env()
    configure_logging(json_logs=cfg.log_json, log_level=cfg.log_level)

    _stores = await build_store_pair(cfg)
    if cfg.seed_sample_data:
        await seed_sample_data(_stores.get(StoreRole.ONLINE))

    service = FacilityService.from_config(cfg, _stores, feed=PublicFacilityFeed())
    # 离线库以在线库为起点
    async with service.sync.admin_operation("startup_copy"):
        await service.sync.copy_online_to_offline()
    await service.start()
    app.state.facility_service = service
    logger.info(
        "api_facility_service_ready",
        backend=cfg.store_backend,
        online=service.sync.is_online,
        sync_interval_seconds=cfg.sync_interval_seconds,
    )

    if cfg.sync_interval_seconds > 0:
        _sync_task = asyncio.create_task(service.sync.run_periodic(cfg.sync_interval_seconds))


@app.on_event("shutdown")
async def shutdown_event():
    global _stores
    global _sync_task

    if _sync_task is not None:
        _sync_task.cancel()
        with suppress(asyncio.CancelledError):
            await _sync_task
    _sync_task = None

    if hasattr(app.state, "facility_service"):
        delattr(app.state, "facility_service")
    if _stores is not None:
        await _stores.close()
    _stores = None
    logger.info("api_shutdown_completed")
