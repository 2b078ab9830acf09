"""Append-only per-session stack of config snapshots with rollback."""

from __future__ import annotations

import logging

from session_guard.backends.base import ConfigStorage, SessionRegistry
from session_guard.errors import RollbackUnavailable, SessionGuardError, SessionNotFound
from session_guard.models import ConfigVersionSnapshot, RollbackResult, SessionInfo
from session_guard.registry import MonitoringRegistry
from session_guard.tracker import PerformanceTracker

logger = logging.getLogger(__name__)


class ConfigVersionStore:
	"""Versions the config content applied to each session.

	``snapshot`` captures whatever is currently persisted and must be called
	before new content is written, so ``rollback`` always has a faithful
	prior state to restore. Rolled-back snapshots stay in ``history`` but
	leave the active stack.
	"""

	def __init__(
		self,
		registry: MonitoringRegistry,
		sessions: SessionRegistry,
		storage: ConfigStorage,
		tracker: PerformanceTracker,
	) -> None:
		self._registry = registry
		self._sessions = sessions
		self._storage = storage
		self._tracker = tracker

	async def snapshot(
		self,
		session_id: str,
		config_id: str,
		provider: str,
		score: float | None = None,
	) -> ConfigVersionSnapshot | None:
		"""Capture the session's current config content as a new version.

		Returns None if the session can't be resolved or its content can't be read.
		"""
		session = self._sessions.get_session(session_id)
		if session is None or not session.project_path:
			logger.warning("Cannot snapshot config for session %s: no storage location", session_id)
			return None

		async with self._registry.session_lock(session_id):
			try:
				content = await self._storage.read_config(session, provider)
			except (OSError, SessionGuardError) as exc:
				logger.warning("Failed to read config for session %s: %s", session_id, exc)
				return None

			stack = self._registry.version_stacks.setdefault(session_id, [])
			snap = ConfigVersionSnapshot(
				session_id=session_id,
				scope_ref=session.folder_ref,
				config_id=config_id,
				version=len(stack) + 1,
				content=content,
				provider=provider,
				score=score,
			)
			self._registry.snapshots[snap.id] = snap
			stack.append(snap.id)
			self._registry.history_ids.setdefault(session_id, []).append(snap.id)
			self._tracker.reset(session_id, snap.id)

		logger.info(
			"Created config snapshot v%d for session %s (config %s, score %s)",
			snap.version, session_id, config_id, score,
		)
		return snap

	def history(self, session_id: str) -> list[ConfigVersionSnapshot]:
		"""All snapshots for a session in creation order, including rolled-back ones."""
		ids = self._registry.history_ids.get(session_id, [])
		return [self._registry.snapshots[i] for i in ids]

	def active_versions(self, session_id: str) -> list[ConfigVersionSnapshot]:
		"""The active stack, oldest first."""
		ids = self._registry.version_stacks.get(session_id, [])
		return [self._registry.snapshots[i] for i in ids]

	def active(self, session_id: str) -> ConfigVersionSnapshot | None:
		version_id = self._registry.active_version_id(session_id)
		if version_id is None:
			return None
		return self._registry.snapshots[version_id]

	def version_count(self, session_id: str) -> int:
		return len(self._registry.version_stacks.get(session_id, []))

	async def rollback(self, session_id: str, reason: str) -> RollbackResult:
		"""Revert to the previous version. State is untouched on failure."""
		async with self._registry.session_lock(session_id):
			try:
				restored = await self._rollback_locked(session_id, reason)
			except SessionGuardError as exc:
				logger.warning("Rollback failed for session %s: %s", session_id, exc.message)
				return RollbackResult(success=False, error=exc.message)
			except OSError as exc:
				logger.warning("Rollback write failed for session %s: %s", session_id, exc)
				return RollbackResult(success=False, error=f"Failed to write config: {exc}")

		logger.info(
			"Rolled back session %s to config v%d: %s",
			session_id, restored.version, reason,
		)
		return RollbackResult(success=True, rolled_back_to=restored.version)

	async def _rollback_locked(self, session_id: str, reason: str) -> ConfigVersionSnapshot:
		stack = self._registry.version_stacks.get(session_id, [])
		if len(stack) < 2:
			raise RollbackUnavailable("No previous version to rollback to", ref=session_id)

		session = self._resolve(session_id)
		current = self._registry.snapshots[stack[-1]]
		previous = self._registry.snapshots[stack[-2]]

		# Write first so a failed write leaves the stack and counters alone
		await self._storage.write_config(session, previous.provider or current.provider, previous.content)

		current.rolled_back = True
		current.rollback_reason = reason
		stack.pop()
		self._tracker.reset(session_id, previous.id)
		return previous

	def _resolve(self, session_id: str) -> SessionInfo:
		session = self._sessions.get_session(session_id)
		if session is None:
			raise SessionNotFound(f"Session not found: {session_id}", ref=session_id)
		return session
