"""Cooldown-gated automatic rollback of degraded config versions."""

from __future__ import annotations

import logging

from session_guard.constants import AUTO_ROLLBACK_REASON, ROLLBACK_COOLDOWN_SECONDS
from session_guard.models import RollbackResult
from session_guard.registry import MonitoringRegistry
from session_guard.tracing import MonitorTracer
from session_guard.tracker import PerformanceTracker
from session_guard.versions import ConfigVersionStore

logger = logging.getLogger(__name__)


class RollbackController:
	"""Reverts a session to its previous config when the active one degrades.

	Successful rollbacks start a per-session cooldown, tracked separately
	from the optimization cooldown. Failed attempts do not start it.
	"""

	def __init__(
		self,
		registry: MonitoringRegistry,
		versions: ConfigVersionStore,
		tracker: PerformanceTracker,
		cooldown_seconds: float = ROLLBACK_COOLDOWN_SECONDS,
		tracer: MonitorTracer | None = None,
	) -> None:
		self._registry = registry
		self._versions = versions
		self._tracker = tracker
		self._cooldown_seconds = cooldown_seconds
		self._tracer = tracer or MonitorTracer()

	def should_rollback(self, session_id: str) -> bool:
		if self._versions.version_count(session_id) < 2:
			return False
		return self._tracker.is_degraded(session_id)

	def in_cooldown(self, session_id: str) -> bool:
		elapsed = self._registry.seconds_since(self._registry.rollback_cooldowns.get(session_id))
		return elapsed is not None and elapsed < self._cooldown_seconds

	async def check_and_auto_rollback(self, session_id: str, actor_id: str = "") -> bool:
		"""Roll back if due and degraded. Returns True only if a rollback happened."""
		if self.in_cooldown(session_id):
			logger.debug("Rollback for session %s is cooling down", session_id)
			return False
		if not self.should_rollback(session_id):
			return False

		result = await self.rollback(session_id, AUTO_ROLLBACK_REASON)
		if not result.success:
			return False
		self._registry.rollback_cooldowns[session_id] = self._registry.clock()
		logger.info(
			"Auto-rolled back session %s to v%s (actor %s)",
			session_id, result.rolled_back_to, actor_id or "system",
		)
		return True

	async def rollback(self, session_id: str, reason: str) -> RollbackResult:
		"""Roll back unconditionally, bypassing the degradation check and cooldown."""
		with self._tracer.start_rollback_span(session_id, reason) as span:
			result = await self._versions.rollback(session_id, reason)
			span.set_attribute("rollback.success", result.success)
			if result.rolled_back_to is not None:
				span.set_attribute("rollback.version", result.rolled_back_to)
		return result
