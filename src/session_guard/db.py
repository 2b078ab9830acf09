"""SQLite storage for monitored scopes and the session activity registry."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from session_guard.backends.base import ScopeStore, SessionRegistry
from session_guard.models import MonitoredScope, SessionInfo, _now_iso

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS monitored_scopes (
	id TEXT PRIMARY KEY,
	owner_id TEXT NOT NULL,
	kind TEXT NOT NULL DEFAULT 'master',
	scope_ref TEXT,
	stall_threshold_seconds INTEGER NOT NULL DEFAULT 0,
	tick_interval_seconds INTEGER NOT NULL DEFAULT 0,
	status TEXT NOT NULL DEFAULT 'idle',
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scopes_owner ON monitored_scopes(owner_id, kind);

CREATE TABLE IF NOT EXISTS sessions (
	id TEXT PRIMARY KEY,
	name TEXT NOT NULL DEFAULT '',
	owner_id TEXT NOT NULL DEFAULT '',
	folder_ref TEXT,
	agent_provider TEXT NOT NULL DEFAULT 'none',
	project_path TEXT,
	capture_ref TEXT NOT NULL DEFAULT '',
	status TEXT NOT NULL DEFAULT 'active',
	is_orchestrator INTEGER NOT NULL DEFAULT 0,
	last_activity_at TEXT,
	created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner_id, status);
CREATE INDEX IF NOT EXISTS idx_sessions_folder ON sessions(folder_ref, status);
"""


class Database(SessionRegistry, ScopeStore):
	"""SQLite database backing scope configuration and session activity."""

	def __init__(self, path: str | Path = ":memory:") -> None:
		db_path = str(path)
		# Shared with the web layer's worker threads
		self.conn = sqlite3.connect(db_path, check_same_thread=False)
		self.conn.row_factory = sqlite3.Row
		logger.debug("Opened database connection: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
		self.conn.execute("PRAGMA foreign_keys=ON")
		self.conn.executescript(SCHEMA_SQL)

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	# -- Scopes --

	def insert_scope(self, scope: MonitoredScope) -> None:
		self.conn.execute(
			"""INSERT INTO monitored_scopes
			(id, owner_id, kind, scope_ref, stall_threshold_seconds,
			 tick_interval_seconds, status, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				scope.id, scope.owner_id, scope.kind, scope.scope_ref,
				scope.stall_threshold_seconds, scope.tick_interval_seconds,
				scope.status, scope.created_at, scope.updated_at,
			),
		)
		self.conn.commit()

	def get_scope(self, scope_id: str) -> MonitoredScope | None:
		row = self.conn.execute(
			"SELECT * FROM monitored_scopes WHERE id=?", (scope_id,),
		).fetchone()
		if row is None:
			return None
		return self._row_to_scope(row)

	def list_scopes(self, status: str | None = None, owner_id: str | None = None) -> list[MonitoredScope]:
		query = "SELECT * FROM monitored_scopes"
		clauses: list[str] = []
		params: list[str] = []
		if status is not None:
			clauses.append("status=?")
			params.append(status)
		if owner_id is not None:
			clauses.append("owner_id=?")
			params.append(owner_id)
		if clauses:
			query += " WHERE " + " AND ".join(clauses)
		query += " ORDER BY created_at"
		rows = self.conn.execute(query, params).fetchall()
		return [self._row_to_scope(r) for r in rows]

	def update_scope(self, scope: MonitoredScope) -> None:
		scope.updated_at = _now_iso()
		self.conn.execute(
			"""UPDATE monitored_scopes SET
			owner_id=?, kind=?, scope_ref=?, stall_threshold_seconds=?,
			tick_interval_seconds=?, status=?, updated_at=?
			WHERE id=?""",
			(
				scope.owner_id, scope.kind, scope.scope_ref,
				scope.stall_threshold_seconds, scope.tick_interval_seconds,
				scope.status, scope.updated_at, scope.id,
			),
		)
		self.conn.commit()

	def set_scope_status(self, scope_id: str, status: str) -> None:
		self.conn.execute(
			"UPDATE monitored_scopes SET status=?, updated_at=? WHERE id=?",
			(status, _now_iso(), scope_id),
		)
		self.conn.commit()

	def delete_scope(self, scope_id: str) -> bool:
		cur = self.conn.execute("DELETE FROM monitored_scopes WHERE id=?", (scope_id,))
		self.conn.commit()
		return cur.rowcount > 0

	def list_scope_ids_for_folder(self, folder_ref: str) -> list[str]:
		rows = self.conn.execute(
			"SELECT id FROM monitored_scopes WHERE kind='folder' AND scope_ref=?",
			(folder_ref,),
		).fetchall()
		return [r["id"] for r in rows]

	@staticmethod
	def _row_to_scope(row: sqlite3.Row) -> MonitoredScope:
		return MonitoredScope(
			id=row["id"],
			owner_id=row["owner_id"],
			kind=row["kind"],
			scope_ref=row["scope_ref"],
			stall_threshold_seconds=row["stall_threshold_seconds"],
			tick_interval_seconds=row["tick_interval_seconds"],
			status=row["status"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- Sessions --

	def insert_session(self, session: SessionInfo) -> None:
		self.conn.execute(
			"""INSERT INTO sessions
			(id, name, owner_id, folder_ref, agent_provider, project_path,
			 capture_ref, status, is_orchestrator, last_activity_at, created_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				session.id, session.name, session.owner_id, session.folder_ref,
				session.agent_provider, session.project_path, session.capture_ref,
				session.status, int(session.is_orchestrator), session.last_activity_at,
				session.created_at,
			),
		)
		self.conn.commit()

	def get_session(self, session_id: str) -> SessionInfo | None:
		row = self.conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_session(row)

	def get_last_activity(self, session_id: str) -> str | None:
		row = self.conn.execute(
			"SELECT last_activity_at FROM sessions WHERE id=?", (session_id,),
		).fetchone()
		if row is None:
			return None
		return row["last_activity_at"]

	def list_active_sessions(self, scope: MonitoredScope) -> list[SessionInfo]:
		if scope.kind == "folder":
			if not scope.scope_ref:
				return []
			rows = self.conn.execute(
				"""SELECT * FROM sessions
				WHERE owner_id=? AND status='active' AND is_orchestrator=0 AND folder_ref=?
				ORDER BY created_at""",
				(scope.owner_id, scope.scope_ref),
			).fetchall()
		else:
			rows = self.conn.execute(
				"""SELECT * FROM sessions
				WHERE owner_id=? AND status='active' AND is_orchestrator=0
				ORDER BY created_at""",
				(scope.owner_id,),
			).fetchall()
		return [self._row_to_session(r) for r in rows]

	def list_sessions(self, owner_id: str | None = None) -> list[SessionInfo]:
		if owner_id is None:
			rows = self.conn.execute("SELECT * FROM sessions ORDER BY created_at").fetchall()
		else:
			rows = self.conn.execute(
				"SELECT * FROM sessions WHERE owner_id=? ORDER BY created_at", (owner_id,),
			).fetchall()
		return [self._row_to_session(r) for r in rows]

	def touch_session(self, session_id: str, at: str | None = None) -> bool:
		cur = self.conn.execute(
			"UPDATE sessions SET last_activity_at=? WHERE id=?",
			(at or _now_iso(), session_id),
		)
		self.conn.commit()
		return cur.rowcount > 0

	def set_session_status(self, session_id: str, status: str) -> bool:
		cur = self.conn.execute(
			"UPDATE sessions SET status=? WHERE id=?", (status, session_id),
		)
		self.conn.commit()
		return cur.rowcount > 0

	@staticmethod
	def _row_to_session(row: sqlite3.Row) -> SessionInfo:
		return SessionInfo(
			id=row["id"],
			name=row["name"],
			owner_id=row["owner_id"],
			folder_ref=row["folder_ref"],
			agent_provider=row["agent_provider"],
			project_path=row["project_path"],
			capture_ref=row["capture_ref"],
			status=row["status"],
			is_orchestrator=bool(row["is_orchestrator"]),
			last_activity_at=row["last_activity_at"],
			created_at=row["created_at"],
		)
