"""TOML configuration loader for session-guard."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from session_guard.constants import DEFAULT_STALL_THRESHOLD_SECONDS, MIN_TICK_INTERVAL_SECONDS

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class StorageConfig:
	"""Where scopes and sessions are persisted."""

	db_path: str = "session-guard.db"

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.db_path))


@dataclass
class MonitoringConfig:
	"""Stall-check loop settings."""

	default_stall_threshold_seconds: int = DEFAULT_STALL_THRESHOLD_SECONDS
	min_tick_interval_seconds: int = MIN_TICK_INTERVAL_SECONDS
	optimize_after_stall_minutes: int = 10  # stalls younger than this only feed the tracker
	capture_lines: int = 100  # scrollback lines pulled for on-demand diagnostics
	auto_start: bool = True  # start every non-paused scope when the server boots


@dataclass
class OptimizerConfig:
	"""External optimizer endpoint and run budget."""

	endpoint: str = "http://localhost:3000/api/sdk/meta"
	user_id: str = ""
	max_iterations: int = 3
	target_score: float = 0.8
	min_improvement: float = 0.05
	timeout_seconds: int = 300
	request_grace_seconds: int = 30  # added on top of timeout_seconds for the HTTP call


@dataclass
class ServerConfig:
	"""HTTP API settings."""

	host: str = "127.0.0.1"
	port: int = 8080


@dataclass
class TracingConfig:
	"""OpenTelemetry tracing settings."""

	enabled: bool = False
	exporter: str = "console"  # console/otlp
	service_name: str = "session-guard"
	otlp_endpoint: str = "http://localhost:4317"


@dataclass
class LoggingConfig:
	level: str = "INFO"


@dataclass
class GuardConfig:
	"""Top-level session-guard configuration."""

	storage: StorageConfig = field(default_factory=StorageConfig)
	monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
	optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
	server: ServerConfig = field(default_factory=ServerConfig)
	tracing: TracingConfig = field(default_factory=TracingConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)


def _build_storage(data: dict[str, Any]) -> StorageConfig:
	sc = StorageConfig()
	if "db_path" in data:
		sc.db_path = str(data["db_path"])
	return sc


def _build_monitoring(data: dict[str, Any]) -> MonitoringConfig:
	mc = MonitoringConfig()
	for key in (
		"default_stall_threshold_seconds",
		"min_tick_interval_seconds",
		"optimize_after_stall_minutes",
		"capture_lines",
	):
		if key in data:
			setattr(mc, key, int(data[key]))
	if "auto_start" in data:
		mc.auto_start = bool(data["auto_start"])
	return mc


def _build_optimizer(data: dict[str, Any]) -> OptimizerConfig:
	oc = OptimizerConfig()
	if "endpoint" in data:
		oc.endpoint = str(data["endpoint"])
	if "user_id" in data:
		oc.user_id = str(data["user_id"])
	if "max_iterations" in data:
		oc.max_iterations = int(data["max_iterations"])
	if "target_score" in data:
		oc.target_score = float(data["target_score"])
	if "min_improvement" in data:
		oc.min_improvement = float(data["min_improvement"])
	if "timeout_seconds" in data:
		oc.timeout_seconds = int(data["timeout_seconds"])
	if "request_grace_seconds" in data:
		oc.request_grace_seconds = int(data["request_grace_seconds"])
	return oc


def _build_server(data: dict[str, Any]) -> ServerConfig:
	sc = ServerConfig()
	if "host" in data:
		sc.host = str(data["host"])
	if "port" in data:
		sc.port = int(data["port"])
	return sc


def _build_tracing(data: dict[str, Any]) -> TracingConfig:
	tc = TracingConfig()
	if "enabled" in data:
		tc.enabled = bool(data["enabled"])
	if "exporter" in data:
		tc.exporter = str(data["exporter"])
	if "service_name" in data:
		tc.service_name = str(data["service_name"])
	if "otlp_endpoint" in data:
		tc.otlp_endpoint = str(data["otlp_endpoint"])
	return tc


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"]).upper()
	return lc


def load_config(path: str | Path) -> GuardConfig:
	"""Load a session-guard.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed GuardConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	gc = GuardConfig()
	if "storage" in data:
		gc.storage = _build_storage(data["storage"])
	if "monitoring" in data:
		gc.monitoring = _build_monitoring(data["monitoring"])
	if "optimizer" in data:
		gc.optimizer = _build_optimizer(data["optimizer"])
	if "server" in data:
		gc.server = _build_server(data["server"])
	if "tracing" in data:
		gc.tracing = _build_tracing(data["tracing"])
	if "logging" in data:
		gc.logging = _build_logging(data["logging"])

	# Env var fallback for the optimizer endpoint
	env_endpoint = os.environ.get("SESSION_GUARD_OPTIMIZER_URL", "")
	if env_endpoint and "endpoint" not in data.get("optimizer", {}):
		gc.optimizer.endpoint = env_endpoint

	# Relative db paths live next to the config file
	db_path = Path(os.path.expanduser(gc.storage.db_path))
	if gc.storage.db_path != ":memory:" and not db_path.is_absolute():
		gc.storage.db_path = str(config_path.parent / db_path)
	return gc


def validate_config(config: GuardConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded GuardConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	endpoint = config.optimizer.endpoint
	if not endpoint.startswith(("http://", "https://")):
		issues.append(("error", f"optimizer.endpoint must be an http(s) URL: {endpoint!r}"))

	if not 0.0 < config.optimizer.target_score <= 1.0:
		issues.append(("error", f"optimizer.target_score out of range: {config.optimizer.target_score}"))
	if config.optimizer.max_iterations < 1:
		issues.append(("error", "optimizer.max_iterations must be at least 1"))
	if config.optimizer.timeout_seconds <= 0:
		issues.append(("error", "optimizer.timeout_seconds must be positive"))

	mon = config.monitoring
	if mon.default_stall_threshold_seconds <= 0:
		issues.append(("error", "monitoring.default_stall_threshold_seconds must be positive"))
	if mon.min_tick_interval_seconds < 5:
		issues.append(("warning", f"min_tick_interval_seconds is very low: {mon.min_tick_interval_seconds}s"))
	if mon.optimize_after_stall_minutes < 0:
		issues.append(("warning", "monitoring.optimize_after_stall_minutes is negative"))

	if config.tracing.exporter not in ("console", "otlp"):
		issues.append(("error", f"tracing.exporter must be 'console' or 'otlp': {config.tracing.exporter!r}"))

	if config.logging.level not in _LOG_LEVELS:
		issues.append(("warning", f"unknown logging.level {config.logging.level!r}, using INFO"))

	db_parent = config.storage.resolved_path.parent
	if config.storage.db_path != ":memory:" and not db_parent.exists():
		issues.append(("error", f"storage.db_path directory does not exist: {db_parent}"))

	return issues


def log_level(config: GuardConfig) -> int:
	"""Resolve the configured level name, falling back to INFO."""
	name = config.logging.level.upper()
	if name not in _LOG_LEVELS:
		return logging.INFO
	return getattr(logging, name)
