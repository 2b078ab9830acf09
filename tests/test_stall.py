"""Tests for stall strategies and the stall detector."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_guard.backends.base import TextCapture
from session_guard.db import Database
from session_guard.models import MonitoredScope, SessionInfo
from session_guard.stall import (
	ContentDiffStallStrategy,
	StallDetector,
	TimestampStallStrategy,
	severity_for,
)


def _capture(*texts: str | None) -> MagicMock:
	capture = MagicMock(spec=TextCapture)
	capture.capture_text = AsyncMock(side_effect=list(texts))
	return capture


class TestSeverity:
	@pytest.mark.parametrize(
		("minutes", "expected"),
		[
			(-1, "info"),
			(0, "info"),
			(14, "info"),
			(15, "warning"),
			(29, "warning"),
			(30, "error"),
			(59, "error"),
			(60, "critical"),
			(600, "critical"),
		],
	)
	def test_bands(self, minutes: int, expected: str) -> None:
		assert severity_for(minutes) == expected


class TestDetectorCheck:
	@pytest.mark.asyncio
	async def test_flags_only_sessions_past_threshold(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(id="fresh", last_activity_at=ago(1))
		add_session(id="idle", name="idle-one", last_activity_at=ago(20), capture_ref="sg-idle")
		detector = StallDetector(db)

		result = await detector.check(scope_factory(stall_threshold_seconds=300))

		assert result.scope_id == "scope1"
		assert result.sessions_checked == 2
		assert [s.session_id for s in result.stalled_sessions] == ["idle"]
		stalled = result.stalled_sessions[0]
		assert stalled.name == "idle-one"
		assert stalled.capture_ref == "sg-idle"
		assert stalled.stalled_minutes in (19, 20)
		assert stalled.severity == "warning"

	@pytest.mark.asyncio
	async def test_exactly_at_threshold_is_stalled(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
	) -> None:
		now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
		add_session(last_activity_at=(now - timedelta(seconds=300)).isoformat())
		result = await StallDetector(db).check(scope_factory(stall_threshold_seconds=300), now=now)
		assert len(result.stalled_sessions) == 1
		assert result.stalled_sessions[0].stalled_minutes == 5

	@pytest.mark.asyncio
	async def test_default_threshold_when_scope_has_none(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(last_activity_at=ago(3))
		detector = StallDetector(db, default_threshold_seconds=120)
		scope = scope_factory(stall_threshold_seconds=0)
		assert detector.threshold_for(scope) == 120
		result = await detector.check(scope)
		assert len(result.stalled_sessions) == 1

	@pytest.mark.asyncio
	async def test_excludes_orchestrators_inactive_and_other_owners(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(id="orch", is_orchestrator=True, last_activity_at=ago(60))
		add_session(id="done", status="terminated", last_activity_at=ago(60))
		add_session(id="other", owner_id="u2", last_activity_at=ago(60))
		result = await StallDetector(db).check(scope_factory())
		assert result.sessions_checked == 0
		assert result.stalled_sessions == []

	@pytest.mark.asyncio
	async def test_folder_scope_limits_to_folder(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(id="in", folder_ref="f1", last_activity_at=ago(30))
		add_session(id="out", folder_ref="f2", last_activity_at=ago(30))
		result = await StallDetector(db).check(scope_factory(kind="folder", scope_ref="f1"))
		assert [s.session_id for s in result.stalled_sessions] == ["in"]
		assert result.stalled_sessions[0].folder_ref == "f1"

	@pytest.mark.asyncio
	async def test_folder_scope_without_ref_checks_nothing(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(last_activity_at=ago(30))
		result = await StallDetector(db).check(scope_factory(kind="folder", scope_ref=None))
		assert result.sessions_checked == 0
		assert result.stalled_sessions == []

	@pytest.mark.asyncio
	async def test_never_active_aged_from_creation(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		add_session(last_activity_at=None, created_at=ago(45))
		result = await StallDetector(db).check(scope_factory())
		stalled = result.stalled_sessions[0]
		assert stalled.last_activity_at is None
		assert stalled.stalled_minutes in (44, 45)
		assert stalled.severity == "error"

	@pytest.mark.asyncio
	async def test_never_active_without_creation_time(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
	) -> None:
		add_session(last_activity_at=None, created_at="")
		result = await StallDetector(db).check(scope_factory())
		stalled = result.stalled_sessions[0]
		assert stalled.stalled_minutes == 0
		assert stalled.stalled_seconds == 0.0
		assert stalled.last_activity_at is None
		assert stalled.severity == "info"


class TestContentDiffStrategy:
	@pytest.mark.asyncio
	async def test_unchanged_output_accumulates_idle_time(self) -> None:
		strategy = ContentDiffStallStrategy(_capture("$ make\n", "$ make\n", "$ make\nok\n"))
		session = SessionInfo(id="s1", capture_ref="sg-s1")
		start = datetime(2026, 1, 1, tzinfo=timezone.utc)

		assert await strategy.idle_seconds(session, start) == 0.0
		assert await strategy.idle_seconds(session, start + timedelta(minutes=7)) == 420.0
		assert await strategy.idle_seconds(session, start + timedelta(minutes=8)) == 0.0

	@pytest.mark.asyncio
	async def test_capture_failure_treated_as_active(self) -> None:
		strategy = ContentDiffStallStrategy(_capture(None))
		idle = await strategy.idle_seconds(SessionInfo(id="s1"), datetime.now(timezone.utc))
		assert idle == 0.0

	@pytest.mark.asyncio
	async def test_forget_restarts_tracking(self) -> None:
		strategy = ContentDiffStallStrategy(_capture("same", "same"))
		session = SessionInfo(id="s1", capture_ref="sg-s1")
		start = datetime(2026, 1, 1, tzinfo=timezone.utc)
		await strategy.idle_seconds(session, start)
		strategy.forget("s1")
		assert await strategy.idle_seconds(session, start + timedelta(hours=1)) == 0.0

	@pytest.mark.asyncio
	async def test_detector_uses_injected_strategy(
		self,
		db: Database,
		add_session: Callable[..., SessionInfo],
		scope_factory: Callable[..., MonitoredScope],
		ago: Callable[[float], str],
	) -> None:
		# Timestamp says idle for an hour; terminal output says otherwise
		add_session(last_activity_at=ago(60))
		strategy = ContentDiffStallStrategy(_capture("building..."))
		result = await StallDetector(db, strategy=strategy).check(scope_factory())
		assert result.stalled_sessions == []


class TestTimestampStrategy:
	@pytest.mark.asyncio
	async def test_reads_registry_timestamp(self, db: Database, add_session: Callable[..., SessionInfo]) -> None:
		now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
		session = add_session(last_activity_at=(now - timedelta(seconds=90)).isoformat())
		assert await TimestampStallStrategy(db).idle_seconds(session, now) == 90.0

	@pytest.mark.asyncio
	async def test_future_timestamp_clamped(self, db: Database, add_session: Callable[..., SessionInfo]) -> None:
		now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
		session = add_session(last_activity_at=(now + timedelta(seconds=30)).isoformat())
		assert await TimestampStallStrategy(db).idle_seconds(session, now) == 0.0


class TestCaptureDiagnostics:
	@pytest.mark.asyncio
	async def test_no_capture_backend(self, db: Database, add_session: Callable[..., SessionInfo], scope_factory, ago) -> None:
		add_session(last_activity_at=ago(30))
		detector = StallDetector(db)
		result = await detector.check(scope_factory())
		assert await detector.capture_diagnostics(result.stalled_sessions[0]) is None

	@pytest.mark.asyncio
	async def test_captures_configured_lines(
		self, db: Database, add_session: Callable[..., SessionInfo], scope_factory, ago,
	) -> None:
		add_session(last_activity_at=ago(30))
		capture = _capture("Traceback (most recent call last):")
		detector = StallDetector(db, capture=capture, capture_lines=40)
		result = await detector.check(scope_factory())

		text = await detector.capture_diagnostics(result.stalled_sessions[0])
		assert text == "Traceback (most recent call last):"
		capture.capture_text.assert_awaited_once_with("sg-s1", 40)
