"""Cache entry value object."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with its freshness metadata.

    Attributes:
        key: Cache key (hex digest)
        value: Cached value (JSON-compatible mapping)
        created_at: Write time, seconds since epoch
        ttl_seconds: Freshness window; must be > 0
        dependency_tags: Tags whose invalidation makes this entry invalid
        stale_if_error_seconds: Extra window during which the entry may be
            served, marked degraded, when every live source failed
    """

    key: str
    value: Any
    created_at: float
    ttl_seconds: float
    dependency_tags: frozenset[str] = frozenset()
    stale_if_error_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")
        if self.stale_if_error_seconds < 0:
            raise ValueError("stale_if_error_seconds cannot be negative")

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) >= self.ttl_seconds

    def within_stale_window(self, now: float, window: float = 0.0) -> bool:
        """True while the entry may still serve as a stale-if-error fallback.

        The window is the longer of the entry's own and the one passed in.
        """
        return self.age(now) < self.ttl_seconds + max(window, self.stale_if_error_seconds)
