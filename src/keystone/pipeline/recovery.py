"""Error Recovery Controller — what to do with a failed plan entry.

Classification:
    - SourceTimeout / TransientNetworkError → retryable (up to max_retries,
      exponential backoff, capped)
    - SourceUnavailable → not retried; substitute the next fallback source
    - SecurityViolation → fatal, never retried, never falls back

Once an entry's retries and fallbacks are exhausted:
    - optional entry → dropped (the result is marked degraded)
    - required entry → degrade from a stale cache entry if the policy's
      stale-if-error window covers it, else fatal

A spent request deadline skips straight to the exhausted rules.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Sequence

from keystone.cache.entry import CacheEntry
from keystone.models import AggregatedData, CachePolicy, ExecutionResult, PlanEntry, SourceKind

logger = logging.getLogger(__name__)

RETRYABLE = frozenset({"SourceTimeout", "TransientNetworkError"})
FALLBACK = frozenset({"SourceUnavailable"})
FATAL = frozenset({"SecurityViolation"})


class RecoveryAction(Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    DEGRADE = "degrade"
    DROP = "drop"
    FATAL = "fatal"


@dataclass(frozen=True)
class RecoveryDecision:
    """Outcome of one classification.

    Attributes:
        action: What the orchestrator does next for the entry
        delay_seconds: Backoff before a retry
        source: Fallback source kind for FALLBACK
        reason: Human-readable explanation (logged, surfaced in warnings)
    """

    action: RecoveryAction
    delay_seconds: float = 0.0
    source: SourceKind | None = None
    reason: str = ""


class ErrorRecoveryController:
    """Stateless recovery policy; per-entry counters live with the caller.

    Args:
        max_retries: Retries per entry for retryable failures
        backoff_base_ms: First retry delay
        backoff_cap_ms: Upper bound on any retry delay
    """

    def __init__(
        self,
        max_retries: int = 2,
        backoff_base_ms: int = 100,
        backoff_cap_ms: int = 2_000,
    ) -> None:
        if backoff_cap_ms < backoff_base_ms:
            raise ValueError("backoff_cap_ms cannot be smaller than backoff_base_ms")
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms

    def classify(self, error_kind: str) -> str:
        """Return 'retryable', 'fallback' or 'fatal' for an error kind.

        DeadlineExceeded is a timeout but there is no time left to retry, so
        it behaves like an unavailable source.
        """
        if error_kind in FATAL:
            return "fatal"
        if error_kind in RETRYABLE:
            return "retryable"
        return "fallback"

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number attempt + 1 (attempt is 0-based)."""
        delay_ms = min(self.backoff_base_ms * 2 ** attempt, self.backoff_cap_ms)
        return delay_ms / 1_000

    def decide(
        self,
        result: ExecutionResult,
        entry: PlanEntry,
        retries_used: int,
        fallbacks_left: Sequence[SourceKind],
        remaining_seconds: float,
    ) -> RecoveryDecision:
        """Decide the next step for one failed result."""
        if result.ok:
            raise ValueError("decide() needs a failed ExecutionResult")
        kind = result.error_kind
        classification = self.classify(kind)

        if classification == "fatal":
            return RecoveryDecision(RecoveryAction.FATAL, reason=f"{kind} is never retried")

        if remaining_seconds <= 0:
            return self._exhausted(entry, (), f"request deadline spent after {kind}")

        if classification == "retryable" and retries_used < self.max_retries:
            delay = self.backoff(retries_used)
            if delay < remaining_seconds:
                return RecoveryDecision(
                    RecoveryAction.RETRY,
                    delay_seconds=delay,
                    reason=f"{kind}, retry {retries_used + 1}/{self.max_retries}",
                )
            return self._exhausted(entry, (), f"{kind}, no time left for backoff")

        if classification == "retryable":
            reason = f"{kind}, retries exhausted"
        else:
            reason = f"{kind}"
        return self._exhausted(entry, fallbacks_left, reason)

    def degrade_from_stale(
        self,
        entry: CacheEntry | None,
        policy: CachePolicy,
        now: float,
    ) -> AggregatedData | None:
        """Serve a stale entry if it is within the stale-if-error window.

        Returns:
            Degraded AggregatedData with data_source 'cached_fallback', or None
        """
        if entry is None or not policy.cacheable or not policy.stale_fallback_allowed:
            return None
        if not entry.within_stale_window(now, policy.stale_if_error_seconds):
            logger.warning(
                "Stale entry %s is %.0fs old, outside the stale-if-error window",
                entry.key[:12], entry.age(now),
            )
            return None
        return AggregatedData.from_cache_value(
            entry.value,
            data_source="cached_fallback",
            cached_at=entry.created_at,
            degraded=True,
        )

    def _exhausted(
        self,
        entry: PlanEntry,
        fallbacks_left: Sequence[SourceKind],
        reason: str,
    ) -> RecoveryDecision:
        if not entry.required:
            return RecoveryDecision(RecoveryAction.DROP, reason=f"{reason}; optional entry dropped")
        if fallbacks_left:
            source = fallbacks_left[0]
            return RecoveryDecision(
                RecoveryAction.FALLBACK,
                source=source,
                reason=f"{reason}; falling back to {source.value}",
            )
        return RecoveryDecision(RecoveryAction.DEGRADE, reason=f"{reason}; no fallback source left")
