"""Tests for optimization triggers, detached runs, and config apply."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from session_guard.backends.files import FileConfigStorage
from session_guard.coordinator import OptimizationCoordinator
from session_guard.errors import ConfigWriteFailed, OptimizerCallFailed
from session_guard.models import ErrorFix, KnowledgeItem, OptimizationRecord, SessionAnalysis, SessionInfo
from session_guard.optimizer import OptimizedConfig
from session_guard.registry import MonitoringRegistry
from session_guard.versions import ConfigVersionStore


@pytest.fixture()
def coordinator(
	registry: MonitoringRegistry,
	db,
	store: ConfigVersionStore,
	storage: FileConfigStorage,
	optimizer_client: MagicMock,
) -> OptimizationCoordinator:
	return OptimizationCoordinator(registry, db, store, storage, optimizer_client)


def _analysis(errors: int = 0, fixes: int = 0) -> SessionAnalysis:
	return SessionAnalysis(
		session_id="s1",
		files_modified=["src/app.py"],
		errors_encountered=[f"TypeError number {i}" for i in range(errors)],
		errors_fixes=[ErrorFix(error=f"TypeError number {i}", fix="cast it") for i in range(fixes)],
		patterns=[KnowledgeItem(content="write the test first", confidence=0.9)],
	)


class TestTriggerGates:
	@pytest.mark.asyncio
	async def test_stall_trigger_returns_pending_record(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		record = await coordinator.trigger_for_stall(session)

		assert record is not None
		assert record.id.startswith("opt-")
		assert record.status == "pending"
		assert record.trigger == "stall_detected"
		assert registry.optimizations[record.id] is record
		assert registry.optimization_cooldowns["s1"] == registry.clock()
		await registry.drain()

	@pytest.mark.asyncio
	async def test_second_trigger_within_cooldown_returns_none(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
		clock,
	) -> None:
		session = add_session()
		assert await coordinator.trigger_for_stall(session) is not None
		assert await coordinator.trigger_for_stall(session) is None

		clock.advance(299)
		assert await coordinator.trigger_for_stall(session) is None
		clock.advance(2)
		assert await coordinator.trigger_for_stall(session) is not None
		await registry.drain()

	@pytest.mark.asyncio
	async def test_cooldown_shared_between_trigger_reasons(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		assert await coordinator.trigger_for_stall(session) is not None
		assert await coordinator.trigger_for_error_pattern(session, _analysis(errors=5)) is None
		await registry.drain()

	@pytest.mark.asyncio
	async def test_no_provider_returns_none_without_cooldown(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session(agent_provider="none")
		assert await coordinator.trigger_for_stall(session) is None
		assert "s1" not in registry.optimization_cooldowns

	@pytest.mark.asyncio
	async def test_error_pattern_requires_three_unfixed(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		assert await coordinator.trigger_for_error_pattern(session, _analysis(errors=4, fixes=2)) is None
		assert "s1" not in registry.optimization_cooldowns

		record = await coordinator.trigger_for_error_pattern(session, _analysis(errors=4, fixes=1))
		assert record is not None
		assert record.trigger == "error_pattern"
		await registry.drain()

	@pytest.mark.asyncio
	async def test_manual_trigger_ignores_cooldown_but_stamps_it(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
		clock,
	) -> None:
		session = add_session()
		assert await coordinator.trigger_for_stall(session) is not None
		clock.advance(10)
		record = await coordinator.trigger_manual(session)
		assert record is not None
		assert record.trigger == "manual"
		assert registry.optimization_cooldowns["s1"] == clock.now
		await registry.drain()

	def test_unknown_trigger_rejected(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		with pytest.raises(ValueError, match="Unknown optimization trigger"):
			coordinator._schedule(session, "bored", None)
		assert registry.optimizations == {}
		assert "s1" not in registry.optimization_cooldowns

	@pytest.mark.parametrize(("status", "terminal"), [
		("pending", False), ("running", False), ("completed", True), ("failed", True),
	])
	def test_record_terminal_states(self, status: str, terminal: bool) -> None:
		assert OptimizationRecord(session_id="s1", trigger="manual", status=status).is_terminal is terminal


class TestRun:
	@pytest.mark.asyncio
	async def test_high_score_applies_new_version(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		store: ConfigVersionStore,
		add_session: Callable[..., SessionInfo],
		project: Path,
	) -> None:
		session = add_session()
		record = await coordinator.trigger_for_stall(session)
		await registry.drain()

		assert record.status == "completed"
		assert record.completed_at is not None
		assert record.final_score == 0.9
		assert record.iterations == 2
		assert record.config_applied is True

		snaps = store.history("s1")
		assert len(snaps) == 1
		assert snaps[0].version == 1
		assert snaps[0].config_id == "cfg-opt"
		assert snaps[0].content == "# Project rules\n\nUse tabs.\n"

		written = (project / "CLAUDE.md").read_text()
		assert written.startswith("# Project rules\n\nUse tabs.\n\n---\n")
		assert "## Meta-Agent Optimizations" in written
		assert "You are working in a Python service" in written
		assert "Run the test suite before every commit." in written

	@pytest.mark.asyncio
	async def test_low_score_applies_nothing(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		store: ConfigVersionStore,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
		project: Path,
		response_factory,
	) -> None:
		optimizer_client.optimize.return_value = response_factory(score=0.5)
		session = add_session()
		record = await coordinator.trigger_for_stall(session)
		await registry.drain()

		assert record.status == "completed"
		assert record.final_score == 0.5
		assert record.config_applied is False
		assert store.history("s1") == []
		assert (project / "CLAUDE.md").read_text() == "# Project rules\n\nUse tabs.\n"

	@pytest.mark.asyncio
	async def test_high_score_without_config_applies_nothing(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		store: ConfigVersionStore,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
		response_factory,
	) -> None:
		optimizer_client.optimize.return_value = response_factory(score=0.95, with_config=False)
		record = await coordinator.trigger_for_stall(add_session())
		await registry.drain()

		assert record.status == "completed"
		assert record.config_applied is False
		assert store.history("s1") == []

	@pytest.mark.asyncio
	async def test_new_version_is_one_above_prior_top(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		store: ConfigVersionStore,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		await store.snapshot("s1", "cfg-a", "claude")
		await store.snapshot("s1", "cfg-b", "claude")

		record = await coordinator.trigger_for_stall(session)
		await registry.drain()

		assert record.config_applied is True
		assert store.active("s1").version == 3

	@pytest.mark.asyncio
	async def test_optimizer_failure_marks_failed(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
	) -> None:
		optimizer_client.optimize.side_effect = OptimizerCallFailed("Optimizer returned 503")
		record = await coordinator.trigger_for_stall(add_session())
		await registry.drain()

		assert record.status == "failed"
		assert record.error == "Optimizer returned 503"
		assert record.completed_at is not None

	@pytest.mark.asyncio
	async def test_unexpected_error_marks_failed(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
	) -> None:
		optimizer_client.optimize.side_effect = RuntimeError("boom")
		record = await coordinator.trigger_for_stall(add_session())
		await registry.drain()

		assert record.status == "failed"
		assert record.error == "boom"

	@pytest.mark.asyncio
	async def test_request_built_from_analysis(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
	) -> None:
		session = add_session()
		await coordinator.trigger_for_error_pattern(session, _analysis(errors=3))
		await registry.drain()

		task, context = optimizer_client.optimize.call_args.args
		assert task.id == "task-s1"
		assert task.description == "Continue work in session: worker"
		assert task.relevant_files == ["src/app.py"]
		assert task.constraints[0] == "Avoid error: TypeError number 0"
		assert task.acceptance_criteria == ["Follow pattern: write the test first"]
		assert context.project_path == session.project_path

	@pytest.mark.asyncio
	async def test_trigger_returns_before_run_finishes(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
		response_factory,
	) -> None:
		release = asyncio.Event()

		async def slow_optimize(task, context):
			await release.wait()
			return response_factory(score=0.5)

		optimizer_client.optimize.side_effect = slow_optimize
		record = await coordinator.trigger_for_stall(add_session())
		await asyncio.sleep(0)
		assert record.status == "running"

		release.set()
		await registry.drain()
		assert record.status == "completed"


class TestCancel:
	@pytest.mark.asyncio
	async def test_cancel_pending(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
	) -> None:
		record = await coordinator.trigger_for_stall(add_session())
		assert coordinator.cancel(record.id) is True
		await registry.drain()

		assert record.status == "failed"
		assert record.error == "cancelled"
		optimizer_client.optimize.assert_not_awaited()

	@pytest.mark.asyncio
	async def test_cancel_running_discards_result(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		store: ConfigVersionStore,
		optimizer_client: MagicMock,
		add_session: Callable[..., SessionInfo],
		response_factory,
	) -> None:
		release = asyncio.Event()

		async def slow_optimize(task, context):
			await release.wait()
			return response_factory(score=0.95)

		optimizer_client.optimize.side_effect = slow_optimize
		record = await coordinator.trigger_for_stall(add_session())
		await asyncio.sleep(0)
		assert coordinator.cancel(record.id) is True

		release.set()
		await registry.drain()
		assert record.status == "failed"
		assert record.error == "cancelled"
		assert record.config_applied is False
		assert store.history("s1") == []

	@pytest.mark.asyncio
	async def test_cannot_cancel_terminal_or_unknown(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		record = await coordinator.trigger_for_stall(add_session())
		await registry.drain()
		assert record.status == "completed"
		assert coordinator.cancel(record.id) is False
		assert coordinator.cancel("opt-missing") is False


class TestApplyConfig:
	@pytest.mark.asyncio
	async def test_unknown_session(self, coordinator: OptimizationCoordinator) -> None:
		result = await coordinator.apply_config("missing", OptimizedConfig(id="c1"))
		assert result.success is False
		assert result.error == "Session not found"

	@pytest.mark.asyncio
	async def test_no_project_path(
		self, coordinator: OptimizationCoordinator, add_session: Callable[..., SessionInfo],
	) -> None:
		add_session(project_path=None)
		result = await coordinator.apply_config("s1", OptimizedConfig(id="c1"))
		assert result.success is False
		assert result.error == "Session has no project path"

	@pytest.mark.asyncio
	async def test_reports_changes(
		self, coordinator: OptimizationCoordinator, add_session: Callable[..., SessionInfo],
	) -> None:
		add_session()
		result = await coordinator.apply_config("s1", OptimizedConfig(id="c1", provider="claude", system_prompt="Be brief."))
		assert result.success is True
		assert result.changes == ["Created config snapshot v1", "Updated CLAUDE.md"]

	@pytest.mark.asyncio
	async def test_write_failure_surfaces_in_result(
		self,
		coordinator: OptimizationCoordinator,
		storage: FileConfigStorage,
		add_session: Callable[..., SessionInfo],
	) -> None:
		add_session()
		failing = AsyncMock(side_effect=ConfigWriteFailed("disk full"))
		with patch.object(storage, "write_config", failing):
			result = await coordinator.apply_config("s1", OptimizedConfig(id="c1", provider="claude"))
		assert result.success is False
		assert result.error == "disk full"


class TestQueries:
	@pytest.mark.asyncio
	async def test_history_filters_and_limits(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		one = add_session()
		two = add_session(id="s2", folder_ref="f1", capture_ref="sg-s2")
		await coordinator.trigger_manual(one)
		await coordinator.trigger_manual(one)
		await coordinator.trigger_manual(two)
		await registry.drain()

		assert len(coordinator.history()) == 3
		assert len(coordinator.history(session_id="s1")) == 2
		assert [r.session_id for r in coordinator.history(scope_ref="f1")] == ["s2"]
		assert len(coordinator.history(limit=1)) == 1

	@pytest.mark.asyncio
	async def test_active_lists_pending_and_running(
		self,
		coordinator: OptimizationCoordinator,
		registry: MonitoringRegistry,
		add_session: Callable[..., SessionInfo],
	) -> None:
		record = await coordinator.trigger_for_stall(add_session())
		assert coordinator.active() == [record]
		await registry.drain()
		assert coordinator.active() == []
