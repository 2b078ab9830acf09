"""Abstract collaborators consumed by the monitoring core."""

from __future__ import annotations

from abc import ABC, abstractmethod

from session_guard.models import MonitoredScope, SessionInfo


class SessionRegistry(ABC):
	"""Source of session activity timestamps and scope membership."""

	@abstractmethod
	def get_session(self, session_id: str) -> SessionInfo | None:
		"""Return a session by id, or None if unknown."""

	@abstractmethod
	def get_last_activity(self, session_id: str) -> str | None:
		"""Return the session's last activity timestamp (ISO-8601) or None."""

	@abstractmethod
	def list_active_sessions(self, scope: MonitoredScope) -> list[SessionInfo]:
		"""Return active, non-orchestrator sessions visible to a scope."""

	@abstractmethod
	def touch_session(self, session_id: str, at: str | None = None) -> bool:
		"""Record activity for a session. Returns False if the session is unknown."""


class ScopeStore(ABC):
	"""CRUD for monitored scope records."""

	@abstractmethod
	def insert_scope(self, scope: MonitoredScope) -> None:
		"""Persist a new scope."""

	@abstractmethod
	def get_scope(self, scope_id: str) -> MonitoredScope | None:
		"""Return a scope by id, or None."""

	@abstractmethod
	def list_scopes(self, status: str | None = None, owner_id: str | None = None) -> list[MonitoredScope]:
		"""List scopes, optionally filtered."""

	@abstractmethod
	def update_scope(self, scope: MonitoredScope) -> None:
		"""Persist changes to an existing scope."""

	@abstractmethod
	def set_scope_status(self, scope_id: str, status: str) -> None:
		"""Update only the status column."""

	@abstractmethod
	def delete_scope(self, scope_id: str) -> bool:
		"""Delete a scope. Returns True if a row was removed."""


class TextCapture(ABC):
	"""On-demand capture of a session's terminal text (diagnostics only)."""

	@abstractmethod
	async def capture_text(self, session_ref: str, lines: int = 100) -> str | None:
		"""Return recent terminal text, or None if the session can't be captured."""


class ConfigStorage(ABC):
	"""Persisted agent configuration, one file per provider per project."""

	@abstractmethod
	async def read_config(self, session: SessionInfo, provider: str) -> str:
		"""Return current config content, or "" if none exists."""

	@abstractmethod
	async def write_config(self, session: SessionInfo, provider: str, content: str) -> None:
		"""Replace config content. Raises ConfigWriteFailed on failure."""
