"""Execution Coordinator — fan a validated plan out to the source adapters.

Every entry runs as its own task; results are joined before aggregation and
returned in plan order. Concurrency is bounded by one semaphore shared by all
requests of the engine, and adapters that cannot run calls in parallel are
serialised by a per-adapter lock.

Each call is bounded by min(entry timeout, remaining request deadline). On
expiry the call is cancelled (or, when the adapter cannot be cancelled, left to
finish detached) and the entry resolves to a SourceTimeout result.
Waiting for the semaphore or an adapter lock is bounded by the request deadline
too; an entry that never gets a slot resolves to DeadlineExceeded.
"""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping

from keystone.adapters.base import SourceAdapter
from keystone.errors import (
    DeadlineExceeded,
    SecurityViolation,
    SourceError,
    SourceTimeout,
    TransientNetworkError,
)
from keystone.models import ExecutionResult, PlanEntry, QueryPlan, SourceKind

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """Results of one execution round, in plan order."""

    results: list[ExecutionResult] = field(default_factory=list)
    failed: bool = False


class ExecutionCoordinator:
    """Runs plan entries concurrently against their adapters.

    Args:
        adapters: Adapter per source kind
        max_concurrency: Global cap on in-flight adapter calls
        clock: Monotonic time source (same clock as request deadlines)
    """

    def __init__(
        self,
        adapters: Mapping[SourceKind, SourceAdapter],
        max_concurrency: int = 16,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapters = dict(adapters)
        self.max_concurrency = max_concurrency
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._serial_locks: dict[SourceKind, asyncio.Lock] = {
            kind: asyncio.Lock()
            for kind, adapter in self.adapters.items()
            if not adapter.supports_parallel
        }
        # Strong references to calls that outlived their timeout
        self._detached: set[asyncio.Task] = set()

    async def execute(
        self,
        plan: QueryPlan,
        deadline: float,
        attempt: int | Mapping[int, int] = 1,
        indices: Iterable[int] | None = None,
    ) -> ExecutionReport:
        """Execute plan entries and wait for all of them.

        Args:
            plan: Validated plan
            deadline: Absolute request deadline on the coordinator clock
            attempt: Attempt number, for all entries or per plan index
            indices: Plan positions to run (default: every entry)

        Returns:
            ExecutionReport; failed is True if any required entry errored
        """
        selected = sorted(set(indices)) if indices is not None else list(range(len(plan)))
        attempts = {
            i: attempt.get(i, 1) if isinstance(attempt, Mapping) else attempt
            for i in selected
        }
        results = await asyncio.gather(
            *(self._run_entry(i, plan[i], deadline, attempts[i]) for i in selected)
        )
        failed = any(not r.ok and plan[r.index].required for r in results)
        if failed:
            logger.warning(
                "Required plan entries failed: %s",
                [(r.index, r.error_kind) for r in results if not r.ok and plan[r.index].required],
            )
        return ExecutionReport(results=list(results), failed=failed)

    async def _run_entry(
        self,
        index: int,
        entry: PlanEntry,
        deadline: float,
        attempt: int,
    ) -> ExecutionResult:
        adapter = self.adapters.get(entry.source_kind)
        if adapter is None:
            return ExecutionResult.failure(
                index, entry.source_kind, "SourceUnavailable",
                f"No adapter configured for source '{entry.source_kind.value}'", attempt,
            )

        serial = self._serial_locks.get(entry.source_kind)
        async with contextlib.AsyncExitStack() as slot:
            try:
                # Waiting for a slot counts against the request deadline
                async with asyncio.timeout(max(deadline - self._clock(), 0)):
                    if serial is not None:
                        await slot.enter_async_context(serial)
                    await slot.enter_async_context(self._semaphore)
            except TimeoutError:
                logger.warning(
                    "Entry %d (%s) spent the request deadline waiting for an execution slot (attempt %d)",
                    index, entry.source_kind.value, attempt,
                )
                return ExecutionResult.failure(
                    index, entry.source_kind, "DeadlineExceeded",
                    "Request deadline spent waiting for an execution slot", attempt,
                )
            return await self._call(index, entry, adapter, deadline, attempt)

    async def _call(
        self,
        index: int,
        entry: PlanEntry,
        adapter: SourceAdapter,
        deadline: float,
        attempt: int,
    ) -> ExecutionResult:
        remaining = deadline - self._clock()
        if remaining <= 0:
            return ExecutionResult.failure(
                index, entry.source_kind, "DeadlineExceeded", "Request deadline spent before execution", attempt,
            )
        entry_timeout = entry.timeout_ms / 1_000
        timeout = min(entry_timeout, remaining)

        start = time.perf_counter()
        try:
            if adapter.supports_cancel:
                rows = await asyncio.wait_for(adapter.execute(entry.payload, timeout), timeout)
            else:
                task = asyncio.ensure_future(adapter.execute(entry.payload, timeout))
                try:
                    rows = await asyncio.wait_for(asyncio.shield(task), timeout)
                except TimeoutError:
                    self._detach(task, entry)
                    raise
        except TimeoutError:
            kind = "DeadlineExceeded" if remaining < entry_timeout else "SourceTimeout"
            logger.warning(
                "Entry %d (%s) timed out after %.0fms (attempt %d)",
                index, entry.source_kind.value, timeout * 1_000, attempt,
            )
            return ExecutionResult.failure(
                index, entry.source_kind, kind, f"No answer within {timeout * 1_000:.0f}ms", attempt,
            )
        except (SourceError, SecurityViolation) as e:
            kind = _error_kind(e)
            logger.warning(
                "Entry %d (%s) failed with %s (attempt %d): %s",
                index, entry.source_kind.value, kind, attempt, e,
            )
            return ExecutionResult.failure(index, entry.source_kind, kind, str(e), attempt)
        except Exception as e:
            logger.exception("Entry %d (%s) raised an unexpected error", index, entry.source_kind.value)
            return ExecutionResult.failure(
                index, entry.source_kind, "SourceUnavailable", f"{type(e).__name__}: {e}", attempt,
            )

        timing_ms = (time.perf_counter() - start) * 1_000
        if not isinstance(rows, list) or not all(isinstance(r, Mapping) for r in rows):
            return ExecutionResult.failure(
                index, entry.source_kind, "SourceUnavailable",
                f"Adapter returned {type(rows).__name__}, expected a list of rows", attempt,
            )
        logger.debug(
            "Entry %d (%s) returned %d rows in %.1fms",
            index, entry.source_kind.value, len(rows), timing_ms,
        )
        return ExecutionResult.success(
            index, entry.source_kind, [dict(r) for r in rows], timing_ms, attempt,
        )

    def _detach(self, task: asyncio.Task, entry: PlanEntry) -> None:
        """Let a non-cancellable call finish in the background."""
        self._detached.add(task)

        def _done(t: asyncio.Task) -> None:
            self._detached.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.debug("Detached %s call finished with %r", entry.source_kind.value, t.exception())

        task.add_done_callback(_done)

    async def close(self) -> None:
        """Wait for detached calls to finish."""
        if self._detached:
            await asyncio.gather(*self._detached, return_exceptions=True)


def _error_kind(error: Exception) -> str:
    if isinstance(error, SecurityViolation):
        return "SecurityViolation"
    if isinstance(error, DeadlineExceeded):
        return "DeadlineExceeded"
    if isinstance(error, SourceTimeout):
        return "SourceTimeout"
    if isinstance(error, TransientNetworkError):
        return "TransientNetworkError"
    return "SourceUnavailable"

