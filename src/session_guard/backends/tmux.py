"""tmux scrollback capture for on-demand stall diagnostics."""

from __future__ import annotations

import asyncio
import logging

from session_guard.backends.base import TextCapture

logger = logging.getLogger(__name__)


class TmuxCapture(TextCapture):
	"""Captures pane text with ``tmux capture-pane``."""

	def __init__(self, tmux_executable: str = "tmux", timeout: float = 10.0) -> None:
		self._tmux = tmux_executable
		self._timeout = timeout

	async def session_exists(self, session_ref: str) -> bool:
		try:
			proc = await asyncio.create_subprocess_exec(
				self._tmux, "has-session", "-t", session_ref,
				stdout=asyncio.subprocess.DEVNULL,
				stderr=asyncio.subprocess.DEVNULL,
			)
		except FileNotFoundError:
			logger.warning("tmux executable not found: %s", self._tmux)
			return False
		await proc.wait()
		return proc.returncode == 0

	async def capture_text(self, session_ref: str, lines: int = 100) -> str | None:
		if not session_ref:
			return None
		if not await self.session_exists(session_ref):
			logger.info("tmux session %s does not exist, skipping capture", session_ref)
			return None

		proc = await asyncio.create_subprocess_exec(
			self._tmux, "capture-pane", "-p", "-t", session_ref, "-S", f"-{lines}",
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
		)
		try:
			stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
		except asyncio.TimeoutError:
			proc.kill()
			await proc.wait()
			logger.warning("tmux capture timed out for %s", session_ref)
			return None

		if proc.returncode != 0:
			logger.warning(
				"tmux capture failed for %s (rc=%s): %s",
				session_ref, proc.returncode, stdout.decode(errors="replace")[:200],
			)
			return None
		return stdout.decode(errors="replace")
