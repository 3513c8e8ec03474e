"""
HTTP server for the operator process.

Serves the liveness and readiness probes plus a small read-only status API
over the VaultTransitUnseal resources, the registered reconciler plugins and
a manual reconcile trigger.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from controller import Controller
from db import DatabaseManager
from health import HealthChecker
from plugins.registry import PluginRegistry, get_registry

logger = logging.getLogger(__name__)

LIVENESS_CHECK = "operator-health"
READINESS_CHECK = "operator-ready"


class ProbeResponse(BaseModel):
    """Body of a health probe response."""

    check: str
    healthy: bool
    message: str


class ResourceSummary(BaseModel):
    """Controller view of a VaultTransitUnseal resource."""

    namespace: str
    name: str
    generation: int = 0
    observed_generation: int = 0
    reconcile_state: str = Field(..., description="pending, ready, retrying or failed")
    state_message: Optional[str] = None
    retry_count: int = 0
    config_error_count: int = 0
    last_reconcile_time: Optional[datetime] = None


class ResourceDetail(ResourceSummary):
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: Dict[str, Any] = Field(default_factory=dict)


class PluginInfo(BaseModel):
    name: str
    version: str


class HistoryEntry(BaseModel):
    generation: int
    success: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    requeue_after: Optional[float] = None
    duration_seconds: Optional[float] = None
    trace_id: Optional[str] = None
    reconcile_time: datetime


def _probe_response(check: str, healthy: bool, message: str) -> JSONResponse:
    body = ProbeResponse(check=check, healthy=healthy, message=message)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


def create_app(
    checker: HealthChecker,
    db: Optional[DatabaseManager] = None,
    controller: Optional[Controller] = None,
    registry: Optional[PluginRegistry] = None,
) -> FastAPI:
    """Build the FastAPI application."""
    if registry is None:
        registry = get_registry()

    app = FastAPI(
        title="Vault Transit Unseal Operator",
        description="Health probes and reconciliation status",
        version="1.0.0",
    )

    @app.get("/healthz")
    async def healthz():
        healthy, message = await checker.liveness()
        return _probe_response(LIVENESS_CHECK, healthy, message)

    @app.get("/readyz")
    async def readyz():
        healthy, message = await checker.readiness()
        return _probe_response(READINESS_CHECK, healthy, message)

    async def _get_resource_or_404(namespace: str, name: str) -> Dict[str, Any]:
        if db is None:
            raise HTTPException(status_code=503, detail="Database not available")
        resource = await db.get_resource(namespace, name)
        if resource is None:
            raise HTTPException(
                status_code=404,
                detail=f"VaultTransitUnseal {namespace}/{name} not found",
            )
        return resource

    @app.get("/api/v1/unseals", response_model=List[ResourceSummary])
    async def list_unseals(
        namespace: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 100,
    ):
        if db is None:
            raise HTTPException(status_code=503, detail="Database not available")
        return await db.list_resources(namespace=namespace, state=state, limit=limit)

    @app.get("/api/v1/unseals/{namespace}/{name}", response_model=ResourceDetail)
    async def get_unseal(namespace: str, name: str):
        return await _get_resource_or_404(namespace, name)

    @app.get(
        "/api/v1/unseals/{namespace}/{name}/history",
        response_model=List[HistoryEntry],
    )
    async def get_history(namespace: str, name: str, limit: int = 10):
        resource = await _get_resource_or_404(namespace, name)
        return await db.get_reconciliation_history(resource["id"], limit=limit)

    @app.post("/api/v1/unseals/{namespace}/{name}/reconcile", status_code=202)
    async def trigger_reconcile(namespace: str, name: str):
        if controller is None:
            raise HTTPException(status_code=503, detail="Controller not available")
        await _get_resource_or_404(namespace, name)
        controller.trigger_reconciliation(namespace, name)
        return {"message": f"Reconciliation queued for {namespace}/{name}"}

    @app.get("/api/v1/reconcilers", response_model=List[PluginInfo])
    async def list_reconcilers():
        plugins = []
        for name in registry.list_reconciler_plugins():
            info = registry.get_reconciler_plugin_info(name)
            if info:
                plugins.append(PluginInfo(**info))
        return plugins

    @app.get("/api/v1/reconcilers/{name}", response_model=PluginInfo)
    async def get_reconciler(name: str):
        if not registry.has_reconciler_plugin(name):
            raise HTTPException(
                status_code=404, detail=f"Reconciler plugin {name} not found"
            )
        return PluginInfo(**registry.get_reconciler_plugin_info(name))

    return app


class HTTPServer:
    """Runs the FastAPI app under uvicorn."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8081):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP server on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping HTTP server")
        if self.server:
            self.server.should_exit = True
