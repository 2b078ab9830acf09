"""CLI interface for session-guard."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import httpx

from session_guard.config import GuardConfig, load_config, log_level, validate_config
from session_guard.db import Database
from session_guard.errors import SessionGuardError
from session_guard.models import SessionInfo

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "session-guard.toml"

INIT_TEMPLATE = """\
[storage]
db_path = "session-guard.db"

[monitoring]
default_stall_threshold_seconds = 300
min_tick_interval_seconds = 30
optimize_after_stall_minutes = 10
capture_lines = 100
auto_start = true

[optimizer]
endpoint = "http://localhost:3000/api/sdk/meta"
user_id = "{owner}"
max_iterations = 3
target_score = 0.8
timeout_seconds = 300

[server]
host = "127.0.0.1"
port = 8080

[tracing]
enabled = false

[logging]
level = "INFO"
"""


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="sg",
		description="session-guard - stall monitoring and config rollback for agent sessions",
	)
	sub = parser.add_subparsers(dest="command")

	# sg init
	init = sub.add_parser("init", help="Write a starter config file")
	init.add_argument("path", nargs="?", default=".")
	init.add_argument("--owner", default="", help="Optimizer user id")

	# sg serve
	serve = sub.add_parser("serve", help="Run the monitoring service and HTTP API")
	serve.add_argument("--config", default=DEFAULT_CONFIG)
	serve.add_argument("--no-auto-start", action="store_true", help="Don't start scope timers on boot")

	# sg check
	check = sub.add_parser("check", help="Run a one-off stall check for a scope")
	check.add_argument("--config", default=DEFAULT_CONFIG)
	check.add_argument("--scope", required=True, help="Scope id")

	# sg scope ...
	scope = sub.add_parser("scope", help="Manage monitored scopes")
	scope.add_argument("--config", default=DEFAULT_CONFIG)
	scope_sub = scope.add_subparsers(dest="scope_command")
	scope_add = scope_sub.add_parser("add", help="Create a scope")
	scope_add.add_argument("--owner", required=True)
	scope_add.add_argument("--kind", choices=["master", "folder"], default="master")
	scope_add.add_argument("--folder", default=None, help="Folder reference (folder scopes)")
	scope_add.add_argument("--threshold", type=int, default=None, help="Stall threshold in seconds")
	scope_list = scope_sub.add_parser("list", help="List scopes")
	scope_list.add_argument("--owner", default=None)
	for name in ("pause", "resume", "delete"):
		p = scope_sub.add_parser(name, help=f"{name.capitalize()} a scope")
		p.add_argument("scope_id")

	# sg session ...
	session = sub.add_parser("session", help="Register, list and stop sessions")
	session.add_argument("--config", default=DEFAULT_CONFIG)
	session_sub = session.add_subparsers(dest="session_command")
	session_add = session_sub.add_parser("add", help="Register a session")
	session_add.add_argument("--owner", required=True)
	session_add.add_argument("--name", default="")
	session_add.add_argument("--folder", default=None)
	session_add.add_argument("--provider", default="none")
	session_add.add_argument("--project-path", default=None)
	session_add.add_argument("--capture-ref", default="", help="tmux session name")
	session_add.add_argument("--orchestrator", action="store_true")
	session_list = session_sub.add_parser("list", help="List sessions")
	session_list.add_argument("--owner", default=None)
	session_stop = session_sub.add_parser("stop", help="Mark a session terminated so scopes stop checking it")
	session_stop.add_argument("session_id")

	# sg heartbeat
	heartbeat = sub.add_parser("heartbeat", help="Record activity for a session")
	heartbeat.add_argument("session_id")
	heartbeat.add_argument("--config", default=DEFAULT_CONFIG)
	heartbeat.add_argument("--response-time-ms", type=float, default=None)
	heartbeat.add_argument("--server", default=None, help="Send to a running server instead of the db")

	# sg validate-config
	validate = sub.add_parser("validate-config", help="Validate config file semantically")
	validate.add_argument("--config", default=DEFAULT_CONFIG)

	# Server-backed queries
	history = sub.add_parser("history", help="Show optimization history")
	history.add_argument("--session", default=None)
	history.add_argument("--scope", default=None)
	history.add_argument("--limit", type=int, default=20)

	versions = sub.add_parser("versions", help="Show config versions for a session")
	versions.add_argument("session_id")

	performance = sub.add_parser("performance", help="Show score vs. observed performance")
	performance.add_argument("session_id")

	rollback = sub.add_parser("rollback", help="Roll a session back to its previous config")
	rollback.add_argument("session_id")
	rollback.add_argument("--reason", default="Manual rollback")

	for p in (history, versions, performance, rollback):
		p.add_argument("--config", default=DEFAULT_CONFIG)
		p.add_argument("--server", default=None, help="Base URL (default from [server] config)")

	return parser


def _load(args: argparse.Namespace) -> GuardConfig:
	config = load_config(args.config)
	logging.getLogger().setLevel(log_level(config))
	return config


def _server_url(args: argparse.Namespace) -> str:
	if args.server:
		return args.server.rstrip("/")
	config = GuardConfig()
	if Path(args.config).exists():
		config = load_config(args.config)
	return f"http://{config.server.host}:{config.server.port}"


def _request(args: argparse.Namespace, method: str, path: str, **kwargs: Any) -> Any:
	with httpx.Client(base_url=_server_url(args), timeout=30.0) as client:
		resp = client.request(method, path, **kwargs)
	if resp.status_code == 404:
		raise SessionGuardError(resp.json().get("detail", "Not found"))
	return resp


def cmd_init(args: argparse.Namespace) -> int:
	"""Initialize a session-guard config."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	config_path.write_text(INIT_TEMPLATE.format(owner=args.owner))
	print(f"Created {config_path}")
	return 0


def cmd_serve(args: argparse.Namespace) -> int:
	"""Run the monitoring service behind the HTTP API."""
	import uvicorn

	from session_guard.backends.tmux import TmuxCapture
	from session_guard.monitor import MonitoringService
	from session_guard.web.server import create_app

	config = _load(args)
	if args.no_auto_start:
		config.monitoring.auto_start = False

	with Database(config.storage.db_path) as db:
		service = MonitoringService(config, db, capture=TmuxCapture())
		app = create_app(service)
		print(f"session-guard listening on http://{config.server.host}:{config.server.port}")
		uvicorn.run(app, host=config.server.host, port=config.server.port, log_level="warning")
	return 0


def cmd_check(args: argparse.Namespace) -> int:
	"""One-off stall check for a scope."""
	from session_guard.monitor import MonitoringService

	config = _load(args)
	with Database(config.storage.db_path) as db:
		service = MonitoringService(config, db)
		try:
			result = asyncio.run(service.check_for_stalled_sessions(args.scope))
		except SessionGuardError as exc:
			print(f"Error: {exc.message}")
			return 1

	print(f"Checked {result.sessions_checked} session(s) at {result.checked_at}")
	if not result.stalled_sessions:
		print("No stalled sessions.")
		return 0
	for s in result.stalled_sessions:
		minutes = f"{s.stalled_minutes}m" if s.last_activity_at else "never active"
		print(f"  [{s.severity}] {s.session_id} {s.name} ({minutes})")
	return 0


def cmd_scope(args: argparse.Namespace) -> int:
	"""Manage monitored scopes in the local database."""
	from session_guard.monitor import MonitoringService

	config = _load(args)
	with Database(config.storage.db_path) as db:
		service = MonitoringService(config, db)
		try:
			if args.scope_command == "add":
				scope = service.create_scope(args.owner, args.kind, args.folder, args.threshold)
				print(f"Created {scope.kind} scope {scope.id} (tick every {scope.tick_interval_seconds}s)")
			elif args.scope_command == "list":
				scopes = service.list_scopes(args.owner)
				if not scopes:
					print("No scopes.")
				for s in scopes:
					ref = f" folder={s.scope_ref}" if s.scope_ref else ""
					print(f"{s.id} [{s.status}] {s.kind} owner={s.owner_id}{ref} threshold={s.stall_threshold_seconds}s")
			elif args.scope_command in ("pause", "resume"):
				service.get_scope(args.scope_id)
				status = "paused" if args.scope_command == "pause" else "idle"
				db.set_scope_status(args.scope_id, status)
				print(f"Scope {args.scope_id} is now {status}")
			elif args.scope_command == "delete":
				service.get_scope(args.scope_id)
				db.delete_scope(args.scope_id)
				print(f"Deleted scope {args.scope_id}")
			else:
				print("Usage: sg scope {add,list,pause,resume,delete}")
				return 1
		except SessionGuardError as exc:
			print(f"Error: {exc.message}")
			return 1
	return 0


def cmd_session(args: argparse.Namespace) -> int:
	"""Register, list or stop sessions in the local activity registry."""
	config = _load(args)
	with Database(config.storage.db_path) as db:
		if args.session_command == "add":
			session = SessionInfo(
				name=args.name,
				owner_id=args.owner,
				folder_ref=args.folder,
				agent_provider=args.provider,
				project_path=str(Path(args.project_path).resolve()) if args.project_path else None,
				capture_ref=args.capture_ref,
				is_orchestrator=args.orchestrator,
			)
			db.insert_session(session)
			print(f"Registered session {session.id}")
		elif args.session_command == "list":
			sessions = db.list_sessions(args.owner)
			if not sessions:
				print("No sessions.")
			for s in sessions:
				last = s.last_activity_at or "never"
				print(f"{s.id} [{s.status}] {s.name} provider={s.agent_provider} last_activity={last}")
		elif args.session_command == "stop":
			if not db.set_session_status(args.session_id, "terminated"):
				print(f"Error: session not found: {args.session_id}")
				return 1
			print(f"Session {args.session_id} terminated")
		else:
			print("Usage: sg session {add,list,stop}")
			return 1
	return 0


def cmd_heartbeat(args: argparse.Namespace) -> int:
	"""Record activity for a session."""
	if args.server:
		body = {"response_time_ms": args.response_time_ms}
		try:
			_request(args, "POST", f"/sessions/{args.session_id}/heartbeat", json=body)
		except (SessionGuardError, httpx.HTTPError) as exc:
			print(f"Error: {exc}")
			return 1
		print(f"Heartbeat sent for {args.session_id}")
		return 0

	config = _load(args)
	with Database(config.storage.db_path) as db:
		if not db.touch_session(args.session_id):
			print(f"Error: session not found: {args.session_id}")
			return 1
	print(f"Recorded activity for {args.session_id}")
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	config = load_config(args.config)
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


def cmd_history(args: argparse.Namespace) -> int:
	"""Show optimization history from a running server."""
	params: dict[str, Any] = {"limit": args.limit}
	if args.session:
		params["session_id"] = args.session
	if args.scope:
		params["scope_id"] = args.scope
	try:
		records = _request(args, "GET", "/optimizations", params=params).json()
	except (SessionGuardError, httpx.HTTPError) as exc:
		print(f"Error: {exc}")
		return 1

	if not records:
		print("No optimizations yet.")
		return 0
	for r in records:
		icon = {"completed": "+", "failed": "x", "running": "~", "pending": "."}.get(r["status"], "?")
		score = f"{r['final_score']:.2f}" if r["final_score"] is not None else "-"
		applied = " applied" if r["config_applied"] else ""
		print(f"[{icon}] {r['id']} | {r['session_id']} | {r['trigger']} | score {score}{applied}")
		if r["error"]:
			print(f"    {r['error'][:100]}")
	return 0


def cmd_versions(args: argparse.Namespace) -> int:
	"""Show config version history for a session."""
	try:
		snaps = _request(args, "GET", f"/sessions/{args.session_id}/versions").json()
	except (SessionGuardError, httpx.HTTPError) as exc:
		print(f"Error: {exc}")
		return 1

	if not snaps:
		print("No config versions yet.")
		return 0
	for s in snaps:
		score = f"{s['score']:.2f}" if s["score"] is not None else "-"
		state = f" rolled back: {s['rollback_reason']}" if s["rolled_back"] else ""
		print(f"v{s['version']} {s['config_id']} ({s['provider']}) score {score} {s['created_at']}{state}")
	return 0


def cmd_performance(args: argparse.Namespace) -> int:
	"""Show score at creation vs. observed counters per active version."""
	try:
		rows = _request(args, "GET", f"/sessions/{args.session_id}/performance").json()
	except (SessionGuardError, httpx.HTTPError) as exc:
		print(f"Error: {exc}")
		return 1

	if not rows:
		print("No config versions yet.")
		return 0
	for r in rows:
		score = f"{r['score']:.2f}" if r["score"] is not None else "-"
		flag = " DEGRADED" if r["degraded"] else ""
		print(
			f"v{r['version']} score {score} | stalls {r['stall_count']} "
			f"errors {r['error_count']} successes {r['success_count']}{flag}"
		)
	return 0


def cmd_rollback(args: argparse.Namespace) -> int:
	"""Manually roll a session back via a running server."""
	try:
		resp = _request(args, "POST", f"/sessions/{args.session_id}/rollback", json={"reason": args.reason})
	except (SessionGuardError, httpx.HTTPError) as exc:
		print(f"Error: {exc}")
		return 1

	result = resp.json()
	if not result.get("success"):
		print(f"Rollback failed: {result.get('error')}")
		return 1
	print(f"Rolled back {args.session_id} to v{result['rolled_back_to']}")
	return 0


COMMANDS = {
	"init": cmd_init,
	"serve": cmd_serve,
	"check": cmd_check,
	"scope": cmd_scope,
	"session": cmd_session,
	"heartbeat": cmd_heartbeat,
	"validate-config": cmd_validate_config,
	"history": cmd_history,
	"versions": cmd_versions,
	"performance": cmd_performance,
	"rollback": cmd_rollback,
}


def main(argv: list[str] | None = None) -> int:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FileNotFoundError as exc:
		print(f"Error: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
