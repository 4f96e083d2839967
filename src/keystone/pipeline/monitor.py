"""Performance Recorder — per-stage timings, cache hit ratio, SLA checks.

Each request gets a RequestMetrics holding an append-only list of
PerformanceSample. finish() totals the request, compares it to the SLA
threshold and attaches an advisory optimization_suggestion; nothing here
changes control flow.

Samples are forwarded to an injected MetricsSink (LoggingSink by default).
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np

from keystone.models import PerformanceSample

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """Append-only destination for performance samples."""

    @abstractmethod
    def record(self, sample: PerformanceSample) -> None:
        ...


class LoggingSink(MetricsSink):
    """Writes every sample to the module logger at DEBUG."""

    def record(self, sample: PerformanceSample) -> None:
        logger.debug(
            "stage=%s duration_ms=%.2f outcome=%s attempt=%d",
            sample.stage, sample.duration_ms, sample.outcome, sample.attempt,
        )


class _StageTimer:
    """Mutable outcome holder yielded by RequestMetrics.stage()."""

    def __init__(self) -> None:
        self.outcome = "ok"


@dataclass
class RequestMetrics:
    """Samples collected for one request."""

    request_id: str
    started_at: float = field(default_factory=time.perf_counter)
    samples: list[PerformanceSample] = field(default_factory=list)

    def add(self, stage: str, duration_ms: float, outcome: str = "ok", attempt: int = 1) -> PerformanceSample:
        sample = PerformanceSample(stage=stage, duration_ms=duration_ms, outcome=outcome, attempt=attempt)
        self.samples.append(sample)
        return sample

    @contextmanager
    def stage(self, name: str, attempt: int = 1) -> Iterator[_StageTimer]:
        """Time a block; an exception escaping it records outcome 'error'."""
        timer = _StageTimer()
        start = time.perf_counter()
        try:
            yield timer
        except BaseException:
            timer.outcome = "error"
            raise
        finally:
            self.add(name, (time.perf_counter() - start) * 1_000, timer.outcome, attempt)

    def attempts(self, stage: str) -> int:
        return sum(1 for s in self.samples if s.stage == stage)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1_000


class PerformanceRecorder:
    """Engine-wide recorder shared by all requests.

    Args:
        sla_threshold_ms: Total request duration above which the SLA is breached
        sink: Destination for samples (default: LoggingSink)
        window: Number of recent request durations kept for p95
    """

    def __init__(
        self,
        sla_threshold_ms: float = 2_000.0,
        sink: MetricsSink | None = None,
        window: int = 256,
    ) -> None:
        self.sla_threshold_ms = sla_threshold_ms
        self.sink = sink or LoggingSink()
        self._durations: deque[float] = deque(maxlen=window)
        self.cache_hits = 0
        self.cache_lookups = 0

    def start_request(self, request_id: str | None = None) -> RequestMetrics:
        return RequestMetrics(request_id=request_id or uuid.uuid4().hex)

    def record_cache_lookup(self, hit: bool) -> None:
        self.cache_lookups += 1
        if hit:
            self.cache_hits += 1

    @property
    def cache_hit_ratio(self) -> float:
        return self.cache_hits / self.cache_lookups if self.cache_lookups else 0.0

    def p95_ms(self) -> float | None:
        if not self._durations:
            return None
        return float(np.percentile(np.fromiter(self._durations, dtype=float), 95))

    def finish(self, metrics: RequestMetrics) -> dict[str, Any]:
        """Close a request and build the performance block of the envelope."""
        total_ms = metrics.elapsed_ms()
        self._durations.append(total_ms)
        for sample in metrics.samples:
            self.sink.record(sample)

        breached = total_ms > self.sla_threshold_ms
        p95 = self.p95_ms()
        suggestion = self._suggest(metrics) if breached else None
        if breached:
            logger.warning(
                "Request %s breached SLA: %.0fms > %.0fms (%s)",
                metrics.request_id, total_ms, self.sla_threshold_ms,
                suggestion["tag"] if suggestion else "no suggestion",
            )

        return {
            "request_id": metrics.request_id,
            "total_ms": round(total_ms, 3),
            "sla_threshold_ms": self.sla_threshold_ms,
            "sla_breached": breached,
            "cache_hit_ratio": round(self.cache_hit_ratio, 4),
            "p95_ms": round(p95, 3) if p95 is not None else None,
            "samples": [s.to_dict() for s in metrics.samples],
            "optimization_suggestion": suggestion,
        }

    def _suggest(self, metrics: RequestMetrics) -> dict[str, str] | None:
        if not metrics.samples:
            return None
        execute_attempts = max((s.attempt for s in metrics.samples if s.stage == "execute"), default=0)
        if execute_attempts > 1:
            return {
                "tag": "unstable_source",
                "text": f"A source needed {execute_attempts} attempts; check its health or lower max_retries.",
            }

        by_stage: dict[str, float] = {}
        for s in metrics.samples:
            by_stage[s.stage] = by_stage.get(s.stage, 0.0) + s.duration_ms
        slowest = max(by_stage, key=by_stage.get)
        if slowest == "execute":
            if self.cache_lookups and self.cache_hit_ratio < 0.5:
                return {
                    "tag": "low_cache_hit_ratio",
                    "text": "Most requests miss the cache; consider a longer TTL for this metric.",
                }
            return {
                "tag": "slow_source",
                "text": "Source execution dominated latency; consider pre-warming the cache.",
            }
        return {
            "tag": f"slow_stage:{slowest}",
            "text": f"Stage '{slowest}' dominated latency.",
        }
