"""Fixed policy constants for stall handling, degradation, and rollback."""

from __future__ import annotations

# Degradation: events recorded against the active config version
DEGRADATION_STALL_THRESHOLD: int = 3
DEGRADATION_ERROR_THRESHOLD: int = 5

# Cooldowns are per session and tracked independently of each other
OPTIMIZATION_COOLDOWN_SECONDS: float = 5 * 60
ROLLBACK_COOLDOWN_SECONDS: float = 10 * 60

# Quality bar an optimized config must reach before it is written
APPLY_SCORE_THRESHOLD: float = 0.7

# Error-pattern trigger: encountered minus fixed
MIN_UNFIXED_ERRORS: int = 3

# Patterns below this confidence are not promoted to acceptance criteria
PATTERN_CONFIDENCE_THRESHOLD: float = 0.7

# Stall detection defaults
DEFAULT_STALL_THRESHOLD_SECONDS: int = 5 * 60
MIN_TICK_INTERVAL_SECONDS: int = 30

AUTO_ROLLBACK_REASON = "Auto-rollback due to performance degradation"
CANCELLED_REASON = "cancelled"

EVENT_TYPES: frozenset[str] = frozenset({"stall", "error", "success"})

OPTIMIZATION_TRIGGERS: frozenset[str] = frozenset({
	"stall_detected",
	"error_pattern",
	"poor_performance",
	"manual",
})

ACTIVE_OPTIMIZATION_STATUSES: frozenset[str] = frozenset({"pending", "running"})
TERMINAL_OPTIMIZATION_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Stall severity bands in minutes, checked highest first
SEVERITY_BANDS: tuple[tuple[int, str], ...] = (
	(60, "critical"),
	(30, "error"),
	(15, "warning"),
)
