"""Agent config files stored in each session's project directory."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from session_guard.backends.base import ConfigStorage
from session_guard.errors import ConfigWriteFailed, SessionNotFound
from session_guard.models import SessionInfo

logger = logging.getLogger(__name__)

CONFIG_FILENAMES: dict[str, str] = {
	"claude": "CLAUDE.md",
	"codex": "AGENTS.md",
	"gemini": "GEMINI.md",
	"opencode": "OPENCODE.md",
}
DEFAULT_CONFIG_FILENAME = "AGENT.md"


def config_filename(provider: str) -> str:
	"""Map an agent provider to the config file it reads."""
	return CONFIG_FILENAMES.get(provider, DEFAULT_CONFIG_FILENAME)


def _decode(raw: bytes) -> str:
	# surrogateescape keeps undecodable bytes so a later write is byte-identical
	return raw.decode("utf-8", errors="surrogateescape")


def _encode(content: str) -> bytes:
	return content.encode("utf-8", errors="surrogateescape")


class FileConfigStorage(ConfigStorage):
	"""Reads and writes ``<project_path>/<provider file>``."""

	def config_path(self, session: SessionInfo, provider: str) -> Path:
		if not session.project_path:
			raise SessionNotFound(
				f"Session {session.id} has no project path", ref=session.id,
			)
		return Path(session.project_path) / config_filename(provider)

	async def read_config(self, session: SessionInfo, provider: str) -> str:
		path = self.config_path(session, provider)
		if not path.exists():
			return ""
		raw = await asyncio.to_thread(path.read_bytes)
		return _decode(raw)

	async def write_config(self, session: SessionInfo, provider: str, content: str) -> None:
		path = self.config_path(session, provider)
		try:
			await asyncio.to_thread(path.write_bytes, _encode(content))
		except OSError as exc:
			raise ConfigWriteFailed(f"Failed to write {path}: {exc}", ref=session.id) from exc
		logger.debug("Wrote %d bytes to %s", len(content), path)
