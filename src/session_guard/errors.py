"""Exception taxonomy for session-guard.

Lookup and IO seams raise these. Callers that must report structured
results (rollback, config apply, optimization runs) catch them and
surface the message instead of propagating.
"""

from __future__ import annotations


class SessionGuardError(Exception):
	"""Base class for all session-guard errors."""

	code = "session_guard_error"

	def __init__(self, message: str, *, ref: str | None = None) -> None:
		super().__init__(message)
		self.message = message
		self.ref = ref


class ScopeNotFound(SessionGuardError):
	"""Raised when a monitored scope id does not resolve."""

	code = "scope_not_found"


class InvalidScope(SessionGuardError):
	"""Raised when a folder scope is missing its folder reference."""

	code = "invalid_scope"


class SessionNotFound(SessionGuardError):
	"""Raised when a session id does not resolve or has no storage location."""

	code = "session_not_found"


class OptimizerCallFailed(SessionGuardError):
	"""Raised when the external optimizer call fails or returns garbage."""

	code = "optimizer_call_failed"


class ConfigWriteFailed(SessionGuardError):
	"""Raised when a session's config file cannot be written."""

	code = "config_write_failed"


class RollbackUnavailable(SessionGuardError):
	"""Raised when a session has fewer than two config versions."""

	code = "rollback_unavailable"
