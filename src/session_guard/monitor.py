"""Periodic stall monitoring per scope, and the service's public surface.

Each monitored scope gets its own asyncio task that runs a cycle
immediately and then every ``max(min_tick, threshold / 2)`` seconds.
A cycle feeds stalls into the performance tracker, gives the rollback
controller first refusal, and only then asks the optimization
coordinator to act. Optimizer runs are detached, so a cycle returns as
soon as they are scheduled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from session_guard.backends.base import ConfigStorage, TextCapture
from session_guard.backends.files import FileConfigStorage
from session_guard.config import GuardConfig
from session_guard.coordinator import OptimizationCoordinator
from session_guard.db import Database
from session_guard.errors import InvalidScope, ScopeNotFound, SessionGuardError, SessionNotFound
from session_guard.models import (
	ConfigVersionSnapshot,
	MonitoredScope,
	MonitoringCycleResult,
	OptimizationRecord,
	PerformanceCorrelation,
	PerformanceRecord,
	RollbackResult,
	SessionAnalysis,
	SessionInfo,
	StallCheckResult,
	StalledSession,
)
from session_guard.optimizer import OptimizerClient
from session_guard.registry import MonitoringRegistry
from session_guard.rollback import RollbackController
from session_guard.stall import StallDetector, StallStrategy
from session_guard.tracing import MonitorTracer
from session_guard.tracker import PerformanceTracker
from session_guard.versions import ConfigVersionStore

logger = logging.getLogger(__name__)

# Turns a stalled session and its captured terminal text into an analysis payload
Analyzer = Callable[[StalledSession, str | None], Awaitable[SessionAnalysis | None]]

SCOPE_KINDS = ("master", "folder")


class MonitoringService:
	"""Wires the monitoring components together around one registry."""

	def __init__(
		self,
		config: GuardConfig,
		db: Database,
		storage: ConfigStorage | None = None,
		capture: TextCapture | None = None,
		client: OptimizerClient | None = None,
		registry: MonitoringRegistry | None = None,
		strategy: StallStrategy | None = None,
		analyzer: Analyzer | None = None,
		tracer: MonitorTracer | None = None,
	) -> None:
		self.config = config
		self.db = db
		self.registry = registry or MonitoringRegistry()
		self.tracer = tracer or MonitorTracer(config.tracing)
		self._storage = storage or FileConfigStorage()
		self._client = client or OptimizerClient(config.optimizer)
		self._analyzer = analyzer

		self.tracker = PerformanceTracker(self.registry)
		self.versions = ConfigVersionStore(self.registry, db, self._storage, self.tracker)
		self.rollbacks = RollbackController(
			self.registry, self.versions, self.tracker, tracer=self.tracer,
		)
		self.coordinator = OptimizationCoordinator(
			self.registry, db, self.versions, self._storage, self._client, tracer=self.tracer,
		)
		self.detector = StallDetector(
			db,
			strategy=strategy,
			capture=capture,
			default_threshold_seconds=config.monitoring.default_stall_threshold_seconds,
			capture_lines=config.monitoring.capture_lines,
		)

	# -- Scopes --

	def tick_interval_for(self, scope: MonitoredScope) -> float:
		threshold = self.detector.threshold_for(scope)
		return max(float(self.config.monitoring.min_tick_interval_seconds), threshold / 2)

	def create_scope(
		self,
		owner_id: str,
		kind: str = "master",
		scope_ref: str | None = None,
		stall_threshold_seconds: int | None = None,
	) -> MonitoredScope:
		if kind not in SCOPE_KINDS:
			raise InvalidScope(f"Unknown scope kind: {kind!r}")
		if kind == "folder" and not scope_ref:
			raise InvalidScope("Folder scope requires a folder reference")
		scope = MonitoredScope(
			owner_id=owner_id,
			kind=kind,
			scope_ref=scope_ref if kind == "folder" else None,
			stall_threshold_seconds=stall_threshold_seconds or self.config.monitoring.default_stall_threshold_seconds,
		)
		scope.tick_interval_seconds = int(self.tick_interval_for(scope))
		self.db.insert_scope(scope)
		logger.info("Created %s scope %s for owner %s", kind, scope.id, owner_id)
		return scope

	def get_scope(self, scope_id: str) -> MonitoredScope:
		scope = self.db.get_scope(scope_id)
		if scope is None:
			raise ScopeNotFound(f"Scope not found: {scope_id}", ref=scope_id)
		return scope

	def list_scopes(self, owner_id: str | None = None) -> list[MonitoredScope]:
		return self.db.list_scopes(owner_id=owner_id)

	async def pause_scope(self, scope_id: str) -> MonitoredScope:
		scope = self.get_scope(scope_id)
		self.stop_monitoring(scope_id)
		scope.status = "paused"
		self.db.update_scope(scope)
		logger.info("Paused scope %s", scope_id)
		return scope

	async def resume_scope(self, scope_id: str) -> MonitoredScope:
		scope = self.get_scope(scope_id)
		scope.status = "idle"
		self.db.update_scope(scope)
		await self.start_monitoring(scope_id)
		logger.info("Resumed scope %s", scope_id)
		return scope

	async def delete_scope(self, scope_id: str) -> bool:
		self.stop_monitoring(scope_id)
		deleted = self.db.delete_scope(scope_id)
		if deleted:
			logger.info("Deleted scope %s", scope_id)
		return deleted

	async def delete_scopes_for_folder(self, folder_ref: str) -> int:
		"""Remove every folder scope pointing at a deleted folder."""
		count = 0
		for scope_id in self.db.list_scope_ids_for_folder(folder_ref):
			if await self.delete_scope(scope_id):
				count += 1
		return count

	def _set_status(self, scope_id: str, status: str) -> None:
		current = self.db.get_scope(scope_id)
		# Pausing mid-cycle wins over cycle bookkeeping
		if current is None or current.is_paused:
			return
		self.db.set_scope_status(scope_id, status)

	# -- Checks --

	async def check_for_stalled_sessions(self, scope_id: str) -> StallCheckResult:
		"""Classify the scope's sessions. A paused scope yields an empty result."""
		scope = self.get_scope(scope_id)
		if scope.is_paused:
			return StallCheckResult(scope_id=scope_id)
		self._set_status(scope_id, "analyzing")
		try:
			return await self.detector.check(scope)
		finally:
			self._set_status(scope_id, "idle")

	async def run_cycle(self, scope_id: str) -> MonitoringCycleResult:
		"""One monitoring tick. Lookup failures skip the cycle instead of raising."""
		result = MonitoringCycleResult(scope_id=scope_id)
		with self.tracer.start_cycle_span(scope_id) as span:
			try:
				scope = self.get_scope(scope_id)
				check = await self.check_for_stalled_sessions(scope_id)
			except SessionGuardError as exc:
				logger.warning("Skipping monitoring cycle for scope %s: %s", scope_id, exc.message)
				result.errors.append({"scope_id": scope_id, "error": exc.message})
				return result

			result.sessions_checked = check.sessions_checked
			result.stalls_detected = len(check.stalled_sessions)
			result.checked_at = check.checked_at
			if check.stalled_sessions:
				self._set_status(scope_id, "acting")
				try:
					for stalled in check.stalled_sessions:
						try:
							action = await self.on_stalled_session(stalled, scope.owner_id)
						except Exception as exc:
							logger.error(
								"Failed to handle stalled session %s: %s",
								stalled.session_id, exc, exc_info=True,
							)
							result.errors.append({"session_id": stalled.session_id, "error": str(exc)})
							continue
						if action == "rollback":
							result.rollbacks += 1
						elif action == "optimize":
							result.optimizations_triggered += 1
				finally:
					self._set_status(scope_id, "idle")

			span.set_attribute("monitor.sessions_checked", result.sessions_checked)
			span.set_attribute("monitor.stalls_detected", result.stalls_detected)
			span.set_attribute("monitor.rollbacks", result.rollbacks)
			span.set_attribute("monitor.optimizations_triggered", result.optimizations_triggered)
		return result

	async def on_stalled_session(self, stalled: StalledSession, actor_id: str = "") -> str | None:
		"""Handle one stall. Returns "rollback", "optimize" or None."""
		session = self._require_session(stalled.session_id)
		self.tracker.record(session.id, "stall")

		if await self.rollbacks.check_and_auto_rollback(session.id, actor_id):
			return "rollback"

		if stalled.stalled_minutes < self.config.monitoring.optimize_after_stall_minutes:
			return None
		if self.coordinator.in_cooldown(session.id):
			return None

		analysis = await self._analyze(stalled)
		record = await self.coordinator.trigger_for_stall(session, analysis)
		return "optimize" if record is not None else None

	async def _analyze(self, stalled: StalledSession) -> SessionAnalysis | None:
		if self._analyzer is None:
			return None
		text = await self.detector.capture_diagnostics(stalled)
		try:
			return await self._analyzer(stalled, text)
		except Exception as exc:
			logger.warning("Analysis failed for session %s: %s", stalled.session_id, exc)
			return None

	# -- Session events --

	async def on_task_complete_analysis(
		self, session_id: str, analysis: SessionAnalysis, actor_id: str = "",
	) -> OptimizationRecord | None:
		"""Feed a finished task's errors and fixes into the tracker, then react."""
		session = self._require_session(session_id)
		for _ in analysis.errors_encountered:
			self.tracker.record(session_id, "error")
		for _ in analysis.errors_fixes:
			self.tracker.record(session_id, "success")

		if await self.rollbacks.check_and_auto_rollback(session_id, actor_id):
			return None
		return await self.coordinator.trigger_for_error_pattern(session, analysis)

	def record_heartbeat(self, session_id: str, response_time_ms: float | None = None) -> PerformanceRecord | None:
		if not self.db.touch_session(session_id):
			raise SessionNotFound(f"Session not found: {session_id}", ref=session_id)
		return self.tracker.record(session_id, "success", response_time_ms)

	async def trigger_optimization(
		self, session_id: str, analysis: SessionAnalysis | None = None,
	) -> OptimizationRecord | None:
		session = self._require_session(session_id)
		return await self.coordinator.trigger_manual(session, analysis)

	def _require_session(self, session_id: str) -> SessionInfo:
		session = self.db.get_session(session_id)
		if session is None:
			raise SessionNotFound(f"Session not found: {session_id}", ref=session_id)
		return session

	# -- Timers --

	async def start_monitoring(self, scope_id: str) -> bool:
		"""Start (or restart) the periodic check for a scope."""
		scope = self.get_scope(scope_id)
		if scope.is_paused:
			logger.info("Scope %s is paused, not starting monitoring", scope_id)
			return False
		self.stop_monitoring(scope_id)
		interval = self.tick_interval_for(scope)
		task = asyncio.create_task(self._timer_loop(scope_id, interval), name=f"monitor-{scope_id}")
		self.registry.timers[scope_id] = task
		logger.info("Started monitoring scope %s every %.0fs", scope_id, interval)
		return True

	def stop_monitoring(self, scope_id: str) -> bool:
		"""Cancel future ticks. An in-flight cycle or optimizer run finishes on its own."""
		task = self.registry.timers.pop(scope_id, None)
		if task is None:
			return False
		task.cancel()
		logger.info("Stopped monitoring scope %s", scope_id)
		return True

	def is_monitoring_active(self, scope_id: str) -> bool:
		task = self.registry.timers.get(scope_id)
		return task is not None and not task.done()

	def get_active_monitoring_scopes(self) -> list[str]:
		return [sid for sid, task in self.registry.timers.items() if not task.done()]

	def stop_all_monitoring(self) -> int:
		scope_ids = list(self.registry.timers)
		for scope_id in scope_ids:
			self.stop_monitoring(scope_id)
		return len(scope_ids)

	async def initialize_monitoring(self) -> int:
		"""Start every scope that isn't paused. Returns how many were started."""
		started = 0
		for scope in self.db.list_scopes():
			if scope.is_paused:
				continue
			if await self.start_monitoring(scope.id):
				started += 1
		logger.info("Initialized monitoring for %d scopes", started)
		return started

	async def _timer_loop(self, scope_id: str, interval: float) -> None:
		while True:
			# Cancelling the timer must not reach a cycle that is mid-write
			cycle = self.registry.spawn(self._tick(scope_id), name=f"cycle-{scope_id}")
			await asyncio.shield(cycle)
			await asyncio.sleep(interval)

	async def _tick(self, scope_id: str) -> None:
		try:
			await self.run_cycle(scope_id)
		except Exception as exc:
			logger.error("Monitoring cycle failed for scope %s: %s", scope_id, exc, exc_info=True)

	# -- Queries --

	def get_optimization_history(
		self, session_id: str | None = None, scope_id: str | None = None, limit: int = 50,
	) -> list[OptimizationRecord]:
		if scope_id is None:
			return self.coordinator.history(session_id=session_id, limit=limit)

		scope = self.get_scope(scope_id)
		if scope.kind == "folder":
			return self.coordinator.history(session_id=session_id, scope_ref=scope.scope_ref, limit=limit)
		owned = {s.id for s in self.db.list_sessions(owner_id=scope.owner_id)}
		records = self.coordinator.history(session_id=session_id, limit=len(self.registry.optimizations))
		return [r for r in records if r.session_id in owned][:limit]

	def get_config_version_history(self, session_id: str) -> list[ConfigVersionSnapshot]:
		return self.versions.history(session_id)

	def get_performance_correlation(self, session_id: str) -> list[PerformanceCorrelation]:
		"""Score at creation vs. observed counters, one row per active version."""
		rows: list[PerformanceCorrelation] = []
		for snap in self.versions.active_versions(session_id):
			rec = self.tracker.get_for_version(snap.id)
			rows.append(PerformanceCorrelation(
				version=snap.version,
				config_id=snap.config_id,
				score=snap.score,
				stall_count=rec.stall_count if rec else 0,
				error_count=rec.error_count if rec else 0,
				success_count=rec.success_count if rec else 0,
				degraded=rec.degradation_detected if rec else False,
			))
		return rows

	async def rollback_config(self, session_id: str, reason: str) -> RollbackResult:
		"""Manual rollback, bypassing the degradation check and cooldown."""
		return await self.rollbacks.rollback(session_id, reason)

	def cancel_optimization(self, record_id: str) -> bool:
		return self.coordinator.cancel(record_id)

	def get_active_optimizations(self) -> list[OptimizationRecord]:
		return self.coordinator.active()

	async def shutdown(self) -> None:
		self.stop_all_monitoring()
		await self.registry.shutdown()
		await self._client.close()
		logger.info("Monitoring service shut down")
