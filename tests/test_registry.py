"""Tests for the shared monitoring registry."""

from __future__ import annotations

import asyncio

import pytest

from session_guard.models import OptimizationRecord
from session_guard.registry import MonitoringRegistry


class TestRegistry:
	def test_session_lock_is_stable_per_session(self, registry: MonitoringRegistry) -> None:
		assert registry.session_lock("s1") is registry.session_lock("s1")
		assert registry.session_lock("s1") is not registry.session_lock("s2")

	def test_active_version_is_stack_top(self, registry: MonitoringRegistry) -> None:
		assert registry.active_version_id("s1") is None
		registry.version_stacks["s1"] = ["v1", "v2"]
		assert registry.active_version_id("s1") == "v2"

	def test_seconds_since_uses_clock(self, registry: MonitoringRegistry, clock) -> None:
		stamp = registry.clock()
		clock.advance(42)
		assert registry.seconds_since(stamp) == 42
		assert registry.seconds_since(None) is None

	@pytest.mark.asyncio
	async def test_spawned_tasks_tracked_until_done(self, registry: MonitoringRegistry) -> None:
		done = asyncio.Event()

		async def work() -> None:
			await done.wait()

		task = registry.spawn(work(), name="work")
		assert task in registry.background_tasks
		done.set()
		await registry.drain()
		await asyncio.sleep(0)
		assert registry.background_tasks == set()

	@pytest.mark.asyncio
	async def test_shutdown_cancels_and_clears(self, registry: MonitoringRegistry) -> None:
		async def forever() -> None:
			await asyncio.sleep(3600)

		timer = asyncio.create_task(forever())
		registry.timers["scope1"] = timer
		bg = registry.spawn(forever())
		registry.optimization_cooldowns["s1"] = 1.0
		registry.rollback_cooldowns["s1"] = 1.0
		registry.version_stacks["s1"] = ["v1"]
		registry.optimizations["opt-1"] = OptimizationRecord(id="opt-1")

		await registry.shutdown()

		assert timer.cancelled()
		assert bg.cancelled()
		assert registry.timers == {}
		assert registry.background_tasks == set()
		assert registry.optimization_cooldowns == {}
		assert registry.rollback_cooldowns == {}
		assert registry.version_stacks == {}
		assert registry.optimizations == {}
