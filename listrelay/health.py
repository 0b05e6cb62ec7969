"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .models import DaemonStatus

if TYPE_CHECKING:
    from .daemon import ListDaemon


def create_health_app(daemon: ListDaemon) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    The *daemon* reference is used to read runtime status and delegate to
    the daemon's ``health_check()`` method.
    """
    app = FastAPI(title="listrelay health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await daemon.health_check()
        healthy = daemon.status in (
            DaemonStatus.STARTING,
            DaemonStatus.RUNNING,
            DaemonStatus.RECONNECTING,
        )
        return JSONResponse(
            content={
                "list_address": daemon.config.mail.address,
                "status": daemon.status.value,
                "uptime_seconds": time.monotonic() - daemon.start_time,
                "details": details,
            },
            status_code=200 if healthy else 503,
        )

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = daemon.is_ready
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
