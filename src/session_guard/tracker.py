"""Per-version event counters and degradation classification."""

from __future__ import annotations

import logging

from session_guard.constants import (
	DEGRADATION_ERROR_THRESHOLD,
	DEGRADATION_STALL_THRESHOLD,
	EVENT_TYPES,
)
from session_guard.models import PerformanceRecord, _now_iso
from session_guard.registry import MonitoringRegistry

logger = logging.getLogger(__name__)


class PerformanceTracker:
	"""Attributes stall/error/success events to a session's active config version.

	Counters live in the registry keyed by version id, so they always
	describe whichever snapshot is on top of the session's stack.
	"""

	def __init__(
		self,
		registry: MonitoringRegistry,
		stall_threshold: int = DEGRADATION_STALL_THRESHOLD,
		error_threshold: int = DEGRADATION_ERROR_THRESHOLD,
	) -> None:
		self._registry = registry
		self._stall_threshold = stall_threshold
		self._error_threshold = error_threshold

	def record(self, session_id: str, event_type: str, response_time_ms: float | None = None) -> PerformanceRecord | None:
		"""Record one event. Returns the updated record, or None if no version is active."""
		if event_type not in EVENT_TYPES:
			raise ValueError(f"Unknown event type: {event_type!r}")

		version_id = self._registry.active_version_id(session_id)
		if version_id is None:
			return None
		rec = self._registry.trackers.get(version_id)
		if rec is None:
			rec = self.reset(session_id, version_id)

		if event_type == "stall":
			rec.stall_count += 1
		elif event_type == "error":
			rec.error_count += 1
		else:
			rec.success_count += 1

		if response_time_ms is not None:
			if rec.avg_response_time_ms is None:
				rec.avg_response_time_ms = float(response_time_ms)
			else:
				rec.avg_response_time_ms = (rec.avg_response_time_ms + response_time_ms) / 2
		rec.last_activity_at = _now_iso()

		if not rec.degradation_detected and (
			rec.stall_count >= self._stall_threshold or rec.error_count >= self._error_threshold
		):
			rec.degradation_detected = True
			logger.warning(
				"Performance degradation detected for session %s (version %s): %d stalls, %d errors",
				session_id, version_id, rec.stall_count, rec.error_count,
			)
		return rec

	def reset(self, session_id: str, version_id: str) -> PerformanceRecord:
		"""Start a zeroed counter set for a version that just became active."""
		rec = PerformanceRecord(session_id=session_id, config_version_id=version_id)
		self._registry.trackers[version_id] = rec
		return rec

	def get(self, session_id: str) -> PerformanceRecord | None:
		"""Return the record for the session's active version."""
		version_id = self._registry.active_version_id(session_id)
		if version_id is None:
			return None
		return self._registry.trackers.get(version_id)

	def get_for_version(self, version_id: str) -> PerformanceRecord | None:
		return self._registry.trackers.get(version_id)

	def is_degraded(self, session_id: str) -> bool:
		rec = self.get(session_id)
		return rec is not None and rec.degradation_detected
