"""Data models for session-guard state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, Field

from session_guard.constants import TERMINAL_OPTIMIZATION_STATUSES


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


def parse_iso(value: str | None) -> datetime | None:
	"""Parse an ISO-8601 timestamp, treating naive values as UTC."""
	if not value:
		return None
	try:
		parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
	except ValueError:
		return None
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


@dataclass
class MonitoredScope:
	"""A monitoring boundary: all of a user's sessions, or one folder's."""

	id: str = field(default_factory=_new_id)
	owner_id: str = ""
	kind: str = "master"  # master/folder
	scope_ref: str | None = None  # folder id for folder scopes
	stall_threshold_seconds: int = 0  # 0 means use the default
	tick_interval_seconds: int = 0
	status: str = "idle"  # idle/analyzing/acting/paused
	created_at: str = field(default_factory=_now_iso)
	updated_at: str = field(default_factory=_now_iso)

	@property
	def is_paused(self) -> bool:
		return self.status == "paused"


@dataclass
class SessionInfo:
	"""Read-only view of an agent terminal session."""

	id: str = field(default_factory=_new_id)
	name: str = ""
	owner_id: str = ""
	folder_ref: str | None = None
	agent_provider: str = "none"  # claude/codex/gemini/opencode/none
	project_path: str | None = None
	capture_ref: str = ""  # terminal multiplexer session name
	status: str = "active"
	is_orchestrator: bool = False
	last_activity_at: str | None = None
	created_at: str = field(default_factory=_now_iso)


@dataclass
class ConfigVersionSnapshot:
	"""Immutable capture of a session's config content.

	Only ``rolled_back`` and ``rollback_reason`` change after creation,
	and they are set exactly once.
	"""

	id: str = field(default_factory=_new_id)
	session_id: str = ""
	scope_ref: str | None = None
	config_id: str = ""
	version: int = 1
	content: str = ""
	provider: str = ""
	score: float | None = None
	created_at: str = field(default_factory=_now_iso)
	rolled_back: bool = False
	rollback_reason: str | None = None


@dataclass
class PerformanceRecord:
	"""Event counters for the config version currently active on a session."""

	session_id: str = ""
	config_version_id: str = ""
	stall_count: int = 0
	error_count: int = 0
	success_count: int = 0
	avg_response_time_ms: float | None = None
	last_activity_at: str = field(default_factory=_now_iso)
	degradation_detected: bool = False


@dataclass
class OptimizationRecord:
	"""Tracks one optimizer run for a session.

	Status moves pending -> running -> completed/failed and is terminal
	once completed or failed.
	"""

	id: str = field(default_factory=lambda: f"opt-{_new_id()}")
	session_id: str = ""
	scope_ref: str | None = None
	trigger: str = "stall_detected"  # stall_detected/error_pattern/poor_performance/manual
	started_at: str = field(default_factory=_now_iso)
	completed_at: str | None = None
	status: str = "pending"  # pending/running/completed/failed
	iterations: int = 0
	initial_score: float | None = None
	final_score: float | None = None
	suggestions_applied: int = 0
	config_applied: bool = False
	error: str | None = None

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_OPTIMIZATION_STATUSES


@dataclass
class StalledSession:
	"""A session flagged by a stall check."""

	session_id: str = ""
	name: str = ""
	folder_ref: str | None = None
	agent_provider: str = "none"
	capture_ref: str = ""
	last_activity_at: str | None = None
	stalled_seconds: float = 0.0
	stalled_minutes: int = 0
	severity: str = "info"  # info/warning/error/critical


@dataclass
class StallCheckResult:
	"""Outcome of checking one scope for stalled sessions."""

	scope_id: str = ""
	stalled_sessions: list[StalledSession] = field(default_factory=list)
	sessions_checked: int = 0
	checked_at: str = field(default_factory=_now_iso)


@dataclass
class MonitoringCycleResult:
	"""Summary of one periodic tick for a scope."""

	scope_id: str = ""
	sessions_checked: int = 0
	stalls_detected: int = 0
	rollbacks: int = 0
	optimizations_triggered: int = 0
	errors: list[dict[str, str]] = field(default_factory=list)
	checked_at: str = field(default_factory=_now_iso)


@dataclass
class RollbackResult:
	success: bool = False
	rolled_back_to: int | None = None
	error: str | None = None


@dataclass
class ConfigApplyResult:
	success: bool = False
	session_id: str = ""
	config_id: str = ""
	changes: list[str] = field(default_factory=list)
	error: str | None = None


@dataclass
class PerformanceCorrelation:
	"""One row of version score vs. observed behaviour."""

	version: int = 0
	config_id: str = ""
	score: float | None = None
	stall_count: int = 0
	error_count: int = 0
	success_count: int = 0
	degraded: bool = False


# -- Analysis payload (produced by an external knowledge extractor) --


class KnowledgeItem(BaseModel, extra="ignore"):
	"""A pattern, gotcha or insight extracted from session output."""

	content: str
	context: str = ""
	confidence: float = Field(default=0.5, ge=0.0, le=1.0)
	tags: list[str] = []


class ErrorFix(BaseModel, extra="ignore"):
	error: str
	fix: str = ""


class SessionAnalysis(BaseModel, extra="ignore"):
	"""Opaque analysis of a session's recent work."""

	session_id: str = ""
	project_path: str = ""
	agent: str = ""
	duration: float = 0.0
	files_modified: list[str] = []
	commands_run: list[str] = []
	errors_encountered: list[str] = []
	errors_fixes: list[ErrorFix] = []
	patterns: list[KnowledgeItem] = []
	gotchas: list[KnowledgeItem] = []
	insights: list[KnowledgeItem] = []

	@property
	def unfixed_errors(self) -> int:
		return len(self.errors_encountered) - len(self.errors_fixes)
