"""Shared pytest fixtures and factory functions for session-guard tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_guard.backends.files import FileConfigStorage
from session_guard.config import GuardConfig
from session_guard.db import Database
from session_guard.models import MonitoredScope, SessionInfo
from session_guard.optimizer import OptimizedConfig, OptimizerClient, OptimizerResponse
from session_guard.registry import MonitoringRegistry
from session_guard.tracker import PerformanceTracker
from session_guard.versions import ConfigVersionStore


class FakeClock:
	"""Monotonic clock stand-in that only moves when told to."""

	def __init__(self, start: float = 1000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


def minutes_ago(minutes: float) -> str:
	return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


def make_scope(**overrides: Any) -> MonitoredScope:
	"""Create a MonitoredScope with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "scope1",
		"owner_id": "u1",
		"kind": "master",
		"stall_threshold_seconds": 300,
	}
	defaults.update(overrides)
	return MonitoredScope(**defaults)


def make_response(score: float = 0.9, with_config: bool = True, **overrides: Any) -> OptimizerResponse:
	config = None
	if with_config:
		config = OptimizedConfig(
			id="cfg-opt",
			provider="claude",
			instructions_file="Run the test suite before every commit.",
			system_prompt="You are working in a Python service with strict typing.",
		)
	data: dict[str, Any] = {"iterations": 2, "final_score": score, "initial_score": 0.4, "config": config}
	data.update(overrides)
	return OptimizerResponse(**data)


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def clock() -> FakeClock:
	return FakeClock()


@pytest.fixture()
def registry(clock: FakeClock) -> MonitoringRegistry:
	return MonitoringRegistry(clock=clock)


@pytest.fixture()
def tracker(registry: MonitoringRegistry) -> PerformanceTracker:
	return PerformanceTracker(registry)


@pytest.fixture()
def storage() -> FileConfigStorage:
	return FileConfigStorage()


@pytest.fixture()
def store(
	registry: MonitoringRegistry, db: Database, storage: FileConfigStorage, tracker: PerformanceTracker,
) -> ConfigVersionStore:
	return ConfigVersionStore(registry, db, storage, tracker)


@pytest.fixture()
def project(tmp_path: Path) -> Path:
	"""Project directory holding an initial CLAUDE.md."""
	proj = tmp_path / "proj"
	proj.mkdir()
	(proj / "CLAUDE.md").write_text("# Project rules\n\nUse tabs.\n")
	return proj


@pytest.fixture()
def add_session(db: Database, project: Path) -> Callable[..., SessionInfo]:
	"""Insert a session into the db. Defaults to an active claude session in ``project``."""

	def _add(**overrides: Any) -> SessionInfo:
		defaults: dict[str, Any] = {
			"id": "s1",
			"name": "worker",
			"owner_id": "u1",
			"agent_provider": "claude",
			"project_path": str(project),
			"capture_ref": "sg-s1",
			"last_activity_at": minutes_ago(0),
		}
		defaults.update(overrides)
		session = SessionInfo(**defaults)
		db.insert_session(session)
		return session

	return _add


@pytest.fixture()
def optimizer_client() -> MagicMock:
	"""OptimizerClient mock that returns a high-scoring config."""
	client = MagicMock(spec=OptimizerClient)
	client.optimize = AsyncMock(return_value=make_response())
	client.close = AsyncMock()
	return client


@pytest.fixture()
def config() -> GuardConfig:
	cfg = GuardConfig()
	cfg.storage.db_path = ":memory:"
	cfg.optimizer.endpoint = "http://optimizer.test/api/sdk/meta"
	return cfg


@pytest.fixture()
def scope_factory() -> Callable[..., MonitoredScope]:
	return make_scope


@pytest.fixture()
def response_factory() -> Callable[..., OptimizerResponse]:
	return make_response


@pytest.fixture()
def ago() -> Callable[[float], str]:
	"""ISO timestamp ``minutes`` before now."""
	return minutes_ago
