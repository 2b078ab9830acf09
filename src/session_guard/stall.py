"""Stall detection for monitored scopes.

Two interchangeable strategies decide how long a session has been idle:
timestamp comparison against the session registry (cheap, the default)
and terminal-content hashing (expensive, needs a capture backend).
"""

from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from session_guard.backends.base import SessionRegistry, TextCapture
from session_guard.constants import DEFAULT_STALL_THRESHOLD_SECONDS, SEVERITY_BANDS
from session_guard.models import (
	MonitoredScope,
	SessionInfo,
	StallCheckResult,
	StalledSession,
	parse_iso,
)

logger = logging.getLogger(__name__)


def severity_for(stalled_minutes: int) -> str:
	for minimum, severity in SEVERITY_BANDS:
		if stalled_minutes >= minimum:
			return severity
	return "info"


class StallStrategy(ABC):
	"""Measures how long a session has gone without activity."""

	name = "base"

	@abstractmethod
	async def idle_seconds(self, session: SessionInfo, now: datetime) -> float | None:
		"""Seconds since last activity, or None if the session has never been active."""

	def forget(self, session_id: str) -> None:
		"""Drop any per-session state kept between checks."""


class TimestampStallStrategy(StallStrategy):
	"""Compares the registry's last-activity timestamp with the current time."""

	name = "timestamp"

	def __init__(self, sessions: SessionRegistry) -> None:
		self._sessions = sessions

	async def idle_seconds(self, session: SessionInfo, now: datetime) -> float | None:
		last = parse_iso(self._sessions.get_last_activity(session.id) or session.last_activity_at)
		if last is None:
			return None
		return max(0.0, (now - last).total_seconds())


class ContentDiffStallStrategy(StallStrategy):
	"""Treats unchanged terminal output as inactivity.

	Keeps a SHA-256 of the last captured text per session along with when
	it was first seen. Sessions that can't be captured are never reported.
	"""

	name = "content_diff"

	def __init__(self, capture: TextCapture, lines: int = 100) -> None:
		self._capture = capture
		self._lines = lines
		self._seen: dict[str, tuple[str, datetime]] = {}

	async def idle_seconds(self, session: SessionInfo, now: datetime) -> float | None:
		text = await self._capture.capture_text(session.capture_ref, self._lines)
		if text is None:
			logger.debug("No capture for session %s, treating as active", session.id)
			return 0.0

		digest = hashlib.sha256(text.encode("utf-8", errors="surrogateescape")).hexdigest()
		previous = self._seen.get(session.id)
		if previous is None or previous[0] != digest:
			self._seen[session.id] = (digest, now)
			return 0.0
		return max(0.0, (now - previous[1]).total_seconds())

	def forget(self, session_id: str) -> None:
		self._seen.pop(session_id, None)


class StallDetector:
	"""Classifies a scope's sessions as stalled or active."""

	def __init__(
		self,
		sessions: SessionRegistry,
		strategy: StallStrategy | None = None,
		capture: TextCapture | None = None,
		default_threshold_seconds: int = DEFAULT_STALL_THRESHOLD_SECONDS,
		capture_lines: int = 100,
	) -> None:
		self._sessions = sessions
		self._strategy = strategy or TimestampStallStrategy(sessions)
		self._capture = capture
		self._default_threshold = default_threshold_seconds
		self._capture_lines = capture_lines

	@property
	def strategy(self) -> StallStrategy:
		return self._strategy

	def threshold_for(self, scope: MonitoredScope) -> int:
		return scope.stall_threshold_seconds or self._default_threshold

	async def check(self, scope: MonitoredScope, now: datetime | None = None) -> StallCheckResult:
		result = StallCheckResult(scope_id=scope.id)
		if scope.kind == "folder" and not scope.scope_ref:
			logger.debug("Folder scope %s has no folder reference, nothing to check", scope.id)
			return result

		now = now or datetime.now(timezone.utc)
		threshold = self.threshold_for(scope)
		candidates = self._sessions.list_active_sessions(scope)
		result.sessions_checked = len(candidates)

		for session in candidates:
			idle = await self._strategy.idle_seconds(session, now)
			if idle is not None and idle < threshold:
				continue
			result.stalled_sessions.append(self._stalled(session, idle, now))

		result.checked_at = now.isoformat()
		if result.stalled_sessions:
			logger.info(
				"Scope %s: %d of %d sessions stalled",
				scope.id, len(result.stalled_sessions), result.sessions_checked,
			)
		return result

	def _stalled(self, session: SessionInfo, idle: float | None, now: datetime) -> StalledSession:
		if idle is None:
			# Never active: age from creation, if known
			created = parse_iso(session.created_at)
			idle = max(0.0, (now - created).total_seconds()) if created else 0.0
		minutes = int(idle // 60)
		return StalledSession(
			session_id=session.id,
			name=session.name,
			folder_ref=session.folder_ref,
			agent_provider=session.agent_provider,
			capture_ref=session.capture_ref,
			last_activity_at=self._sessions.get_last_activity(session.id) or session.last_activity_at,
			stalled_seconds=idle,
			stalled_minutes=minutes,
			severity=severity_for(minutes),
		)

	async def capture_diagnostics(self, stalled: StalledSession) -> str | None:
		"""Pull the session's recent terminal text. Only called for stalled sessions."""
		if self._capture is None or not stalled.capture_ref:
			return None
		return await self._capture.capture_text(stalled.capture_ref, self._capture_lines)
