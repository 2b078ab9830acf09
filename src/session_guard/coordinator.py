"""Cooldown-gated optimizer triggers and detached optimization runs."""

from __future__ import annotations

import asyncio
import logging

from session_guard.backends.base import ConfigStorage, SessionRegistry
from session_guard.backends.files import config_filename
from session_guard.constants import (
	ACTIVE_OPTIMIZATION_STATUSES,
	APPLY_SCORE_THRESHOLD,
	CANCELLED_REASON,
	MIN_UNFIXED_ERRORS,
	OPTIMIZATION_COOLDOWN_SECONDS,
	OPTIMIZATION_TRIGGERS,
)
from session_guard.errors import SessionGuardError
from session_guard.models import (
	ConfigApplyResult,
	OptimizationRecord,
	SessionAnalysis,
	SessionInfo,
	_now_iso,
)
from session_guard.optimizer import (
	OptimizedConfig,
	OptimizerClient,
	build_project_context,
	build_task_spec,
	merge_config_content,
)
from session_guard.registry import MonitoringRegistry
from session_guard.tracing import MonitorTracer
from session_guard.versions import ConfigVersionStore

logger = logging.getLogger(__name__)


class OptimizationCoordinator:
	"""Decides when to call the external optimizer and applies what it returns.

	Stall and error-pattern triggers share one per-session cooldown. The
	cooldown is stamped when a run is scheduled, not when it finishes, so
	at most one attempt per session is in flight within the window. Runs
	are detached tasks: failures end up on the OptimizationRecord and
	never reach the caller.
	"""

	def __init__(
		self,
		registry: MonitoringRegistry,
		sessions: SessionRegistry,
		versions: ConfigVersionStore,
		storage: ConfigStorage,
		client: OptimizerClient,
		cooldown_seconds: float = OPTIMIZATION_COOLDOWN_SECONDS,
		tracer: MonitorTracer | None = None,
	) -> None:
		self._registry = registry
		self._sessions = sessions
		self._versions = versions
		self._storage = storage
		self._client = client
		self._cooldown_seconds = cooldown_seconds
		self._tracer = tracer or MonitorTracer()

	def in_cooldown(self, session_id: str) -> bool:
		elapsed = self._registry.seconds_since(self._registry.optimization_cooldowns.get(session_id))
		return elapsed is not None and elapsed < self._cooldown_seconds

	# -- Triggers --

	async def trigger_for_stall(
		self, session: SessionInfo, analysis: SessionAnalysis | None = None,
	) -> OptimizationRecord | None:
		if self.in_cooldown(session.id):
			logger.debug("Optimization for session %s is cooling down", session.id)
			return None
		if not _has_provider(session):
			return None
		return self._schedule(session, "stall_detected", analysis)

	async def trigger_for_error_pattern(
		self, session: SessionInfo, analysis: SessionAnalysis,
	) -> OptimizationRecord | None:
		if self.in_cooldown(session.id):
			logger.debug("Optimization for session %s is cooling down", session.id)
			return None
		if not _has_provider(session):
			return None
		if analysis.unfixed_errors < MIN_UNFIXED_ERRORS:
			return None
		return self._schedule(session, "error_pattern", analysis)

	async def trigger_manual(
		self, session: SessionInfo, analysis: SessionAnalysis | None = None,
	) -> OptimizationRecord | None:
		"""User-initiated run. Stamps the cooldown without honouring it."""
		if not _has_provider(session):
			return None
		return self._schedule(session, "manual", analysis)

	def _schedule(
		self, session: SessionInfo, trigger: str, analysis: SessionAnalysis | None,
	) -> OptimizationRecord:
		if trigger not in OPTIMIZATION_TRIGGERS:
			raise ValueError(f"Unknown optimization trigger: {trigger!r}")
		record = OptimizationRecord(session_id=session.id, scope_ref=session.folder_ref, trigger=trigger)
		self._registry.optimizations[record.id] = record
		self._registry.optimization_cooldowns[session.id] = self._registry.clock()
		self._registry.spawn(self._run(record, session, analysis), name=f"optimize-{record.id}")
		logger.info("Triggered optimization %s for session %s (%s)", record.id, session.id, trigger)
		return record

	# -- Run --

	async def _run(
		self, record: OptimizationRecord, session: SessionInfo, analysis: SessionAnalysis | None,
	) -> None:
		if record.is_terminal:
			return
		record.status = "running"
		with self._tracer.start_optimization_span(record.id, session.id, record.trigger) as span:
			try:
				task = build_task_spec(session, analysis)
				context = await asyncio.to_thread(build_project_context, session)
				response = await self._client.optimize(task, context)
			except Exception as exc:
				self._fail(record, exc)
				span.record_exception(exc)
				return

			if record.is_terminal:
				logger.info("Optimization %s finished after it was cancelled, discarding result", record.id)
				return

			record.iterations = response.iterations
			record.initial_score = response.initial_score
			record.final_score = response.final_score
			record.suggestions_applied = response.suggestions_applied or 0
			span.set_attribute("optimization.final_score", response.final_score)

			if response.final_score >= APPLY_SCORE_THRESHOLD and response.config is not None:
				try:
					applied = await self.apply_config(session.id, response.config, response.final_score)
				except Exception as exc:
					self._fail(record, exc)
					span.record_exception(exc)
					return
				record.config_applied = applied.success
				if not applied.success:
					logger.warning("Optimization %s: config not applied: %s", record.id, applied.error)
			elif response.config is not None:
				logger.info(
					"Optimization %s scored %.2f, below %.2f; config not applied",
					record.id, response.final_score, APPLY_SCORE_THRESHOLD,
				)

			if record.is_terminal:
				return
			record.status = "completed"
			record.completed_at = _now_iso()
			span.set_attribute("optimization.config_applied", record.config_applied)
			logger.info(
				"Optimization %s completed for session %s (score %.2f, applied=%s)",
				record.id, session.id, response.final_score, record.config_applied,
			)

	def _fail(self, record: OptimizationRecord, exc: BaseException) -> None:
		message = exc.message if isinstance(exc, SessionGuardError) else str(exc)
		logger.error("Optimization %s failed: %s", record.id, message, exc_info=True)
		if record.is_terminal:
			return
		record.status = "failed"
		record.error = message
		record.completed_at = _now_iso()

	# -- Apply --

	async def apply_config(
		self, session_id: str, config: OptimizedConfig, score: float | None = None,
	) -> ConfigApplyResult:
		"""Snapshot the current config, then write the merged optimized content."""
		result = ConfigApplyResult(session_id=session_id, config_id=config.id)
		session = self._sessions.get_session(session_id)
		if session is None:
			result.error = "Session not found"
			return result
		if not session.project_path:
			result.error = "Session has no project path"
			return result

		provider = config.provider or session.agent_provider
		snap = await self._versions.snapshot(session_id, config.id, provider, score)
		if snap is None:
			result.error = "Failed to snapshot current config"
			return result
		result.changes.append(f"Created config snapshot v{snap.version}")

		merged = merge_config_content(snap.content, config.instructions_file, config.system_prompt)
		try:
			async with self._registry.session_lock(session_id):
				await self._storage.write_config(session, provider, merged)
		except (OSError, SessionGuardError) as exc:
			result.error = exc.message if isinstance(exc, SessionGuardError) else str(exc)
			logger.warning("Failed to apply config %s to session %s: %s", config.id, session_id, result.error)
			return result

		filename = config_filename(provider)
		result.changes.append(f"Updated {filename}")
		result.success = True
		logger.info("Applied config %s to session %s: %s", config.id, session_id, filename)
		return result

	# -- Queries --

	def cancel(self, record_id: str) -> bool:
		record = self._registry.optimizations.get(record_id)
		if record is None or record.status not in ACTIVE_OPTIMIZATION_STATUSES:
			return False
		record.status = "failed"
		record.error = CANCELLED_REASON
		record.completed_at = _now_iso()
		logger.info("Cancelled optimization %s", record_id)
		return True

	def get(self, record_id: str) -> OptimizationRecord | None:
		return self._registry.optimizations.get(record_id)

	def history(
		self, session_id: str | None = None, scope_ref: str | None = None, limit: int = 50,
	) -> list[OptimizationRecord]:
		"""Records newest first, optionally filtered by session or scope reference."""
		records = list(self._registry.optimizations.values())
		if session_id is not None:
			records = [r for r in records if r.session_id == session_id]
		if scope_ref is not None:
			records = [r for r in records if r.scope_ref == scope_ref]
		records.sort(key=lambda r: r.started_at, reverse=True)
		return records[:limit]

	def active(self) -> list[OptimizationRecord]:
		return [r for r in self._registry.optimizations.values() if r.status in ACTIVE_OPTIMIZATION_STATUSES]


def _has_provider(session: SessionInfo) -> bool:
	if not session.agent_provider or session.agent_provider == "none":
		logger.debug("Session %s has no agent provider, skipping optimization", session.id)
		return False
	return True
