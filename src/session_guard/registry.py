"""Process-local monitoring state shared by every component.

One MonitoringRegistry is constructed per process (or per test) and passed
by reference to the tracker, version store, controllers and the monitoring
service. All per-session maps are mutated under ``session_lock(session_id)``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from session_guard.models import ConfigVersionSnapshot, OptimizationRecord, PerformanceRecord

logger = logging.getLogger(__name__)


@dataclass
class MonitoringRegistry:
	"""Holds cooldowns, trackers, version stacks and active timers."""

	clock: Callable[[], float] = time.monotonic
	snapshots: dict[str, ConfigVersionSnapshot] = field(default_factory=dict)
	# session id -> snapshot ids, oldest first; only non-rolled-back ids
	version_stacks: dict[str, list[str]] = field(default_factory=dict)
	# session id -> every snapshot id ever created, oldest first
	history_ids: dict[str, list[str]] = field(default_factory=dict)
	# snapshot id -> live counters for that version
	trackers: dict[str, PerformanceRecord] = field(default_factory=dict)
	optimization_cooldowns: dict[str, float] = field(default_factory=dict)
	rollback_cooldowns: dict[str, float] = field(default_factory=dict)
	optimizations: dict[str, OptimizationRecord] = field(default_factory=dict)
	timers: dict[str, asyncio.Task[None]] = field(default_factory=dict)
	background_tasks: set[asyncio.Task[None]] = field(default_factory=set)
	_session_locks: dict[str, asyncio.Lock] = field(default_factory=dict)

	def session_lock(self, session_id: str) -> asyncio.Lock:
		lock = self._session_locks.get(session_id)
		if lock is None:
			lock = asyncio.Lock()
			self._session_locks[session_id] = lock
		return lock

	def active_version_id(self, session_id: str) -> str | None:
		stack = self.version_stacks.get(session_id)
		if not stack:
			return None
		return stack[-1]

	def seconds_since(self, stamp: float | None) -> float | None:
		if stamp is None:
			return None
		return self.clock() - stamp

	def spawn(self, coro: Coroutine[Any, Any, None], *, name: str | None = None) -> asyncio.Task[None]:
		"""Start a detached task that is tracked until it finishes."""
		task = asyncio.create_task(coro, name=name)
		self.background_tasks.add(task)
		task.add_done_callback(self.background_tasks.discard)
		return task

	async def drain(self, timeout: float | None = None) -> None:
		"""Wait for in-flight background tasks to finish."""
		if not self.background_tasks:
			return
		await asyncio.wait(list(self.background_tasks), timeout=timeout)

	async def shutdown(self) -> None:
		"""Cancel every timer and background task and clear all state."""
		tasks = list(self.timers.values()) + list(self.background_tasks)
		for task in tasks:
			task.cancel()
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)
		logger.info("Monitoring registry shut down (%d tasks cancelled)", len(tasks))
		self.timers.clear()
		self.background_tasks.clear()
		self.snapshots.clear()
		self.version_stacks.clear()
		self.history_ids.clear()
		self.trackers.clear()
		self.optimization_cooldowns.clear()
		self.rollback_cooldowns.clear()
		self.optimizations.clear()
		self._session_locks.clear()
