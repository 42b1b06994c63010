from __future__ import annotations

import asyncio
import os
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import InstallerConfig
from .errors import InstallerError
from .history import FailureStat, InstallHistory, InstallRun, ModuleResult, ModuleSummary, PhaseTiming
from .plan_snapshot import phases_to_payload
from .planner import plan_phases
from .resolver import DependencyResolver, ModuleLookup, root_constraint


class ResolvePayload(BaseModel):
    module: str
    version: Optional[str] = None
    repository: Optional[str] = None


def _auth_guard(token: Optional[str], request: Request):
    if not token:
        return None
    header = request.headers.get("x-installer-token")
    query = request.query_params.get("token")
    if header == token or query == token:
        return None
    return JSONResponse(status_code=403, content={"detail": "forbidden"})


def create_app(
    history: InstallHistory,
    *,
    registry: Optional[ModuleLookup] = None,
    config: Optional[InstallerConfig] = None,
) -> FastAPI:
    config = config or InstallerConfig()
    api_token = os.environ.get("INSTALLER_API_TOKEN")

    app = FastAPI(title="Automation Module Installer History")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def health():
        return {"status": "ok", "resolver_available": registry is not None}

    @app.get("/api/recent")
    def api_recent(
        limit: int = Query(20, le=200),
        status: Optional[str] = None,
        module: Optional[str] = None,
    ) -> List[ModuleResult]:
        return history.recent_results(limit=limit, status=status, module=module)

    @app.get("/api/runs")
    def api_runs(limit: int = Query(20, le=200), account: Optional[str] = None) -> List[InstallRun]:
        return history.runs(limit=limit, account=account)

    @app.get("/api/runs/{run_id}/phases")
    def api_run_phases(run_id: str) -> List[PhaseTiming]:
        return history.phase_durations(run_id)

    @app.get("/api/top-failures")
    def api_top_failures(limit: int = Query(20, le=200), account: Optional[str] = None) -> List[FailureStat]:
        return history.failing_modules(limit=limit, account=account)

    @app.get("/api/module/{name}")
    def api_module(name: str, account: Optional[str] = None) -> ModuleSummary:
        return history.module_summary(name, account=account)

    @app.get("/api/event/{name}/{version}")
    def api_event(name: str, version: str, account: Optional[str] = None):
        result = history.latest_result(name, version, account=account)
        if not result:
            return JSONResponse(status_code=404, content={"detail": "not found"})
        return result

    @app.get("/api/summary")
    def api_summary(account: Optional[str] = None):
        return {"outcomes": history.outcome_counts(account=account)}

    @app.post("/api/resolve")
    async def api_resolve(payload: ResolvePayload, request: Request):
        auth_error = _auth_guard(api_token, request)
        if auth_error:
            return auth_error
        if registry is None:
            return JSONResponse(status_code=503, content={"detail": "registry not configured"})
        repository = payload.repository or config.repository
        resolver = DependencyResolver(registry, policy=config.resolution_policy, max_depth=config.max_depth)
        try:
            entries = await asyncio.to_thread(
                resolver.resolve,
                payload.module,
                repository,
                root_constraint(payload.module, payload.version),
            )
        except InstallerError as exc:
            return JSONResponse(status_code=422, content={"detail": str(exc)})
        phases = plan_phases(entries)
        return {
            "root": payload.module,
            "repository": repository,
            "phases": phases_to_payload(phases),
            "dropped": [
                {"dependency": str(failure.spec), "parent": failure.parent, "error": str(failure.error)}
                for failure in resolver.failures
            ],
        }

    @app.exception_handler(Exception)
    async def handle_exceptions(request: Request, exc: Exception):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    return app
