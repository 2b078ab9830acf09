"""Collaborator backends for session-guard."""

from __future__ import annotations

from session_guard.backends.base import ConfigStorage, ScopeStore, SessionRegistry, TextCapture
from session_guard.backends.files import CONFIG_FILENAMES, FileConfigStorage, config_filename
from session_guard.backends.tmux import TmuxCapture

__all__ = [
	"CONFIG_FILENAMES",
	"ConfigStorage",
	"FileConfigStorage",
	"ScopeStore",
	"SessionRegistry",
	"TextCapture",
	"TmuxCapture",
	"config_filename",
]
