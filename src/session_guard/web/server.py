"""FastAPI surface over the monitoring service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from session_guard.errors import (
	ConfigWriteFailed,
	InvalidScope,
	OptimizerCallFailed,
	RollbackUnavailable,
	ScopeNotFound,
	SessionGuardError,
	SessionNotFound,
)
from session_guard.models import SessionAnalysis
from session_guard.monitor import MonitoringService

logger = logging.getLogger(__name__)

_STATUS_CODES: dict[type[SessionGuardError], int] = {
	ScopeNotFound: 404,
	SessionNotFound: 404,
	InvalidScope: 400,
	RollbackUnavailable: 409,
	ConfigWriteFailed: 502,
	OptimizerCallFailed: 502,
}


class ScopeCreate(BaseModel):
	owner_id: str
	kind: str = "master"
	scope_ref: str | None = None
	stall_threshold_seconds: int | None = None


class HeartbeatBody(BaseModel):
	response_time_ms: float | None = None


class AnalysisBody(BaseModel):
	analysis: SessionAnalysis
	actor_id: str = ""


class OptimizeBody(BaseModel):
	analysis: SessionAnalysis | None = None


class RollbackBody(BaseModel):
	reason: str = "Manual rollback"


def create_app(service: MonitoringService, start_monitoring: bool = True) -> FastAPI:
	"""Factory: build the API app around an already-constructed service."""

	@asynccontextmanager
	async def lifespan(app: FastAPI):
		if start_monitoring and service.config.monitoring.auto_start:
			await service.initialize_monitoring()
		yield
		await service.shutdown()

	app = FastAPI(title="session-guard", lifespan=lifespan)

	@app.exception_handler(SessionGuardError)
	async def guard_error(request: Request, exc: SessionGuardError) -> JSONResponse:
		status = _STATUS_CODES.get(type(exc), 500)
		return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=status)

	@app.get("/health")
	async def health() -> dict[str, Any]:
		return {
			"status": "ok",
			"active_scopes": len(service.get_active_monitoring_scopes()),
			"active_optimizations": len(service.get_active_optimizations()),
		}

	# -- Scopes --

	@app.get("/scopes")
	async def list_scopes(owner_id: str | None = None) -> list[dict[str, Any]]:
		return [_scope_dict(service, s) for s in service.list_scopes(owner_id)]

	@app.post("/scopes", status_code=201)
	async def create_scope(body: ScopeCreate) -> dict[str, Any]:
		scope = service.create_scope(
			body.owner_id, body.kind, body.scope_ref, body.stall_threshold_seconds,
		)
		if start_monitoring:
			await service.start_monitoring(scope.id)
		return _scope_dict(service, service.get_scope(scope.id))

	@app.get("/scopes/{scope_id}")
	async def get_scope(scope_id: str) -> dict[str, Any]:
		return _scope_dict(service, service.get_scope(scope_id))

	@app.delete("/scopes/{scope_id}")
	async def delete_scope(scope_id: str) -> dict[str, Any]:
		service.get_scope(scope_id)
		return {"deleted": await service.delete_scope(scope_id)}

	@app.post("/scopes/{scope_id}/pause")
	async def pause_scope(scope_id: str) -> dict[str, Any]:
		return _scope_dict(service, await service.pause_scope(scope_id))

	@app.post("/scopes/{scope_id}/resume")
	async def resume_scope(scope_id: str) -> dict[str, Any]:
		return _scope_dict(service, await service.resume_scope(scope_id))

	@app.post("/scopes/{scope_id}/monitoring/start")
	async def start_monitoring_scope(scope_id: str) -> dict[str, Any]:
		started = await service.start_monitoring(scope_id)
		return {"scope_id": scope_id, "started": started, "active": service.is_monitoring_active(scope_id)}

	@app.post("/scopes/{scope_id}/monitoring/stop")
	async def stop_monitoring_scope(scope_id: str) -> dict[str, Any]:
		service.get_scope(scope_id)
		stopped = service.stop_monitoring(scope_id)
		return {"scope_id": scope_id, "stopped": stopped, "active": service.is_monitoring_active(scope_id)}

	@app.get("/scopes/{scope_id}/monitoring")
	async def monitoring_status(scope_id: str) -> dict[str, Any]:
		service.get_scope(scope_id)
		return {"scope_id": scope_id, "active": service.is_monitoring_active(scope_id)}

	@app.get("/scopes/{scope_id}/stalls")
	async def scope_stalls(scope_id: str) -> dict[str, Any]:
		return asdict(await service.check_for_stalled_sessions(scope_id))

	# -- Sessions --

	@app.post("/sessions/{session_id}/heartbeat")
	async def heartbeat(session_id: str, body: HeartbeatBody | None = None) -> dict[str, Any]:
		rt = body.response_time_ms if body else None
		rec = service.record_heartbeat(session_id, rt)
		return {"session_id": session_id, "performance": asdict(rec) if rec else None}

	@app.post("/sessions/{session_id}/analysis")
	async def task_analysis(session_id: str, body: AnalysisBody) -> dict[str, Any]:
		record = await service.on_task_complete_analysis(session_id, body.analysis, body.actor_id)
		return {"optimization": asdict(record) if record else None}

	@app.post("/sessions/{session_id}/optimize")
	async def optimize(session_id: str, body: OptimizeBody | None = None) -> dict[str, Any]:
		record = await service.trigger_optimization(session_id, body.analysis if body else None)
		return {"optimization": asdict(record) if record else None}

	@app.get("/sessions/{session_id}/versions")
	async def versions(session_id: str) -> list[dict[str, Any]]:
		return [asdict(s) for s in service.get_config_version_history(session_id)]

	@app.get("/sessions/{session_id}/performance")
	async def performance(session_id: str) -> list[dict[str, Any]]:
		return [asdict(r) for r in service.get_performance_correlation(session_id)]

	@app.post("/sessions/{session_id}/rollback")
	async def rollback(session_id: str, body: RollbackBody | None = None) -> JSONResponse:
		reason = body.reason if body else RollbackBody().reason
		result = await service.rollback_config(session_id, reason)
		return JSONResponse(asdict(result), status_code=200 if result.success else 409)

	# -- Optimizations --

	@app.get("/optimizations")
	async def optimizations(
		session_id: str | None = None, scope_id: str | None = None, limit: int = 50,
	) -> list[dict[str, Any]]:
		return [asdict(r) for r in service.get_optimization_history(session_id, scope_id, limit)]

	@app.get("/optimizations/active")
	async def active_optimizations() -> list[dict[str, Any]]:
		return [asdict(r) for r in service.get_active_optimizations()]

	@app.post("/optimizations/{record_id}/cancel")
	async def cancel_optimization(record_id: str) -> JSONResponse:
		cancelled = service.cancel_optimization(record_id)
		return JSONResponse({"id": record_id, "cancelled": cancelled}, status_code=200 if cancelled else 409)

	return app


def _scope_dict(service: MonitoringService, scope: Any) -> dict[str, Any]:
	data = asdict(scope)
	data["monitoring_active"] = service.is_monitoring_active(scope.id)
	return data
