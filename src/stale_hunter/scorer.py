"""Staleness scoring.

A pure function of an app's activity timestamp, its resident memory and the
current time. Higher scores mark stronger cleanup candidates.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from stale_hunter.config import ScoringConfig


class Scorable(Protocol):
    """Anything carrying the two inputs the scorer needs."""

    memory_bytes: int
    last_active_at: float


@dataclass(frozen=True, slots=True)
class StalenessResult:
    """Output of score()."""

    staleness_score: float  # 0.0 - 1.0
    is_stale: bool
    is_heavy: bool


class StalenessLevel(Enum):
    """Human-readable staleness levels, in increasing order."""

    ACTIVE = "active"
    RECENT = "recent"
    IDLE = "idle"
    STALE = "stale"
    VERY_STALE = "very_stale"

    @classmethod
    def from_score(cls, score: float) -> "StalenessLevel":
        """Return the level for a staleness score."""
        if score < 0.2:
            return cls.ACTIVE
        if score < 0.4:
            return cls.RECENT
        if score < 0.6:
            return cls.IDLE
        if score < 0.8:
            return cls.STALE
        return cls.VERY_STALE

    @property
    def description(self) -> str:
        """Short description for list views."""
        return _LEVEL_DESCRIPTIONS[self]


_LEVEL_DESCRIPTIONS = {
    StalenessLevel.ACTIVE: "Currently in use",
    StalenessLevel.RECENT: "Used within the last few minutes",
    StalenessLevel.IDLE: "Not used for a while",
    StalenessLevel.STALE: "Good candidate for closing",
    StalenessLevel.VERY_STALE: "Recommended to close",
}


def idle_seconds(last_active_at: float, now: float) -> float:
    """Seconds since last activity. Clock skew (future timestamps) clamps to 0."""
    return max(now - last_active_at, 0.0)


def score(app: Scorable, now: float, config: ScoringConfig) -> StalenessResult:
    """Score one app.

    Args:
        app: Object with memory_bytes and last_active_at (epoch seconds)
        now: Current time (epoch seconds)
        config: Thresholds and weights

    Returns:
        StalenessResult with the weighted score and the stale/heavy flags
    """
    idle = idle_seconds(app.last_active_at, now)
    memory = max(app.memory_bytes, 0)

    normalized_idle = min(idle / config.stale_threshold_seconds, 1.0)
    normalized_memory = min(memory / config.heavy_threshold_bytes, 1.0)

    value = config.idle_weight * normalized_idle + config.memory_weight * normalized_memory

    return StalenessResult(
        staleness_score=min(max(value, 0.0), 1.0),
        is_stale=idle > config.stale_threshold_seconds,
        is_heavy=memory > config.heavy_threshold_bytes,
    )
