"""Orchestration Engine — one intent in, one response envelope out.

Each request walks an explicit state machine:

    INIT → PLANNED → CACHE_CHECK → FORMAT                      (valid hit / coalesced)
                                 → CONSTRUCTED → OPTIMIZED → SECURED → EXECUTING
    EXECUTING  → AGGREGATED | RECOVERING
    RECOVERING → EXECUTING (retry) | CONSTRUCTED (fallback)
               | AGGREGATED (degrade / drop) | ERROR (fatal)
    AGGREGATED → CACHE_WRITE → MONITORED → DONE
    FORMAT     → MONITORED

Any non-terminal state may move to ERROR. DONE and ERROR are terminal; any
other move raises RuntimeError.

Concurrent misses for the same cache key run one computation: the first
request leads, the others wait for its result and format it as 'coalesced'.

Usage:
    async with OrchestrationEngine.from_settings() as engine:
        envelope = await engine.handle({"chart": "bar", "metric": "headcount",
                                        "dimension": "department"})
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Sequence

from keystone.adapters import ApiSourceAdapter, SourceAdapter, SqlSourceAdapter, StreamSourceAdapter
from keystone.cache import CacheEntry, CacheStore, MemoryBackend, ParquetBackend, cache_key, derive_tags
from keystone.catalog import MetricCatalog, MetricDefinition, Volatility, default_catalog
from keystone.config import Settings, settings
from keystone.engine import (
    QueryConstructor,
    QueryOptimizer,
    ResultAggregator,
    SecurityValidator,
    StrategyPlanner,
)
from keystone.errors import CacheError, DeadlineExceeded, KeystoneError, error_from_kind
from keystone.models import (
    AggregatedData,
    ExecutionResult,
    PlanEntry,
    QueryIntent,
    QueryPlan,
    QueryStrategy,
    SourceKind,
)
from keystone.pipeline.coordinator import ExecutionCoordinator
from keystone.pipeline.envelope import describe_payload, error_envelope, success_envelope
from keystone.pipeline.monitor import MetricsSink, PerformanceRecorder, RequestMetrics
from keystone.pipeline.recovery import ErrorRecoveryController, RecoveryAction

logger = logging.getLogger(__name__)


class RequestState(Enum):
    INIT = "init"
    PLANNED = "planned"
    CACHE_CHECK = "cache_check"
    CONSTRUCTED = "constructed"
    OPTIMIZED = "optimized"
    SECURED = "secured"
    EXECUTING = "executing"
    RECOVERING = "recovering"
    AGGREGATED = "aggregated"
    CACHE_WRITE = "cache_write"
    FORMAT = "format"
    MONITORED = "monitored"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATES = frozenset({RequestState.DONE, RequestState.ERROR})

TRANSITIONS: Mapping[RequestState, frozenset[RequestState]] = MappingProxyType({
    RequestState.INIT: frozenset({RequestState.PLANNED}),
    RequestState.PLANNED: frozenset({RequestState.CACHE_CHECK}),
    RequestState.CACHE_CHECK: frozenset({RequestState.FORMAT, RequestState.CONSTRUCTED}),
    RequestState.CONSTRUCTED: frozenset({RequestState.OPTIMIZED}),
    RequestState.OPTIMIZED: frozenset({RequestState.SECURED}),
    RequestState.SECURED: frozenset({RequestState.EXECUTING}),
    RequestState.EXECUTING: frozenset({RequestState.AGGREGATED, RequestState.RECOVERING}),
    RequestState.RECOVERING: frozenset({
        RequestState.EXECUTING,
        RequestState.CONSTRUCTED,
        RequestState.AGGREGATED,
        RequestState.ERROR,
    }),
    RequestState.AGGREGATED: frozenset({RequestState.CACHE_WRITE}),
    RequestState.CACHE_WRITE: frozenset({RequestState.MONITORED}),
    RequestState.FORMAT: frozenset({RequestState.MONITORED}),
    RequestState.MONITORED: frozenset({RequestState.DONE}),
    RequestState.DONE: frozenset(),
    RequestState.ERROR: frozenset(),
})


class RequestContext:
    """Per-request state: FSM position, metrics and the retained stale entry."""

    def __init__(self, metrics: RequestMetrics) -> None:
        self.metrics = metrics
        self.state = RequestState.INIT
        self.history: list[RequestState] = [RequestState.INIT]
        self.stale: CacheEntry | None = None

    @property
    def request_id(self) -> str:
        return self.metrics.request_id

    def can_transition(self, target: RequestState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        return target is RequestState.ERROR or target in TRANSITIONS[self.state]

    def transition(self, target: RequestState) -> None:
        """Move to target.

        Raises:
            RuntimeError: If the move is not in the transition table
        """
        if not self.can_transition(target):
            raise RuntimeError(f"Illegal state transition {self.state.name} → {target.name}")
        logger.debug("[%s] %s → %s", self.request_id[:8], self.state.name, target.name)
        self.state = target
        self.history.append(target)


@dataclass(eq=False)
class _Slot:
    """Mutable execution bookkeeping for one plan entry."""

    entry: PlanEntry
    result: ExecutionResult | None = None
    retries: int = 0
    attempts: int = 0


@dataclass
class _Outcome:
    """What a computation hands to its own request and to coalesced followers."""

    data: AggregatedData
    executed_queries: list[dict[str, Any]] = field(default_factory=list)
    optimization_applied: list[str] = field(default_factory=list)
    cache_strategy: dict[str, Any] = field(default_factory=dict)


class OrchestrationEngine:
    """Drives one request through planning, caching, execution and recovery.

    Components are injected; from_settings() wires the defaults.

    Args:
        catalog: Metric catalog shared by all components
        adapters: Source adapter per source kind
        cache: Result cache (default: L1 over an in-memory L2)
        agent_id: Identifier stamped on every envelope
        request_timeout_ms: Default request deadline
        scope_keys: Intent metadata keys that partition cache keys (row-level
            policy attributes are always added)
        clock: Monotonic clock for deadlines (must match the coordinator's)
    """

    def __init__(
        self,
        catalog: MetricCatalog | None = None,
        adapters: Mapping[SourceKind, SourceAdapter] | None = None,
        cache: CacheStore | None = None,
        planner: StrategyPlanner | None = None,
        constructor: QueryConstructor | None = None,
        optimizer: QueryOptimizer | None = None,
        validator: SecurityValidator | None = None,
        coordinator: ExecutionCoordinator | None = None,
        recovery: ErrorRecoveryController | None = None,
        aggregator: ResultAggregator | None = None,
        recorder: PerformanceRecorder | None = None,
        agent_id: str = "keystone-query-engine",
        request_timeout_ms: int = 10_000,
        scope_keys: Sequence[str] = ("tenant_id",),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog if catalog is not None else default_catalog()
        self.adapters = dict(adapters or {})
        self.cache = cache or CacheStore(backend=MemoryBackend())
        self.planner = planner or StrategyPlanner(
            self.catalog, api_enabled=SourceKind.API in self.adapters
        )
        self.constructor = constructor or QueryConstructor(
            self.catalog, enabled_sources=list(self.adapters)
        )
        self.optimizer = optimizer or QueryOptimizer(self.catalog)
        self.validator = validator or SecurityValidator(self.catalog)
        self.coordinator = coordinator or ExecutionCoordinator(self.adapters, clock=clock)
        self.recovery = recovery or ErrorRecoveryController()
        self.aggregator = aggregator or ResultAggregator()
        self.recorder = recorder or PerformanceRecorder()
        self.agent_id = agent_id
        self.request_timeout_ms = request_timeout_ms
        # Row-level filters change the rows, so their principal attributes partition keys too
        self.scope_keys = tuple(dict.fromkeys([*scope_keys, *self.catalog.principal_attributes]))
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        catalog: MetricCatalog | None = None,
        adapters: Mapping[SourceKind, SourceAdapter] | None = None,
        stream_feed: Any = None,
        cache: CacheStore | None = None,
        sink: MetricsSink | None = None,
    ) -> "OrchestrationEngine":
        """Build an engine from Settings (default: the global settings).

        Sources are enabled by configuration: sql_database → SQL adapter,
        api_base_url → API adapter, stream_feed → stream adapter.
        """
        config = config or settings

        if catalog is None:
            catalog = MetricCatalog.from_file(config.catalog_path) if config.catalog_path else default_catalog()

        if adapters is None:
            adapters = {}
            if config.sql_database:
                adapters[SourceKind.SQL] = SqlSourceAdapter(config.sql_database)
            if config.api_enabled:
                adapters[SourceKind.API] = ApiSourceAdapter(
                    base_url=config.api_base_url,
                    api_key=config.api_key,
                    rate_limit=config.api_rate_limit,
                )
            if stream_feed is not None:
                adapters[SourceKind.STREAM] = StreamSourceAdapter(stream_feed)
        if not adapters:
            logger.warning("No data sources configured; every request will fail or be served from cache")

        if cache is None:
            backend = (
                ParquetBackend(base_path=config.cache_dir)
                if config.cache_backend == "parquet"
                else MemoryBackend()
            )
            cache = CacheStore(
                backend=backend,
                max_entries=config.l1_max_entries,
                stale_retention_seconds=config.stale_retention_seconds,
            )

        ttls = {
            Volatility.HISTORICAL: config.ttl_historical_seconds,
            Volatility.DAILY: config.ttl_daily_seconds,
            Volatility.NEAR_REALTIME: config.ttl_near_realtime_seconds,
        }
        return cls(
            catalog=catalog,
            adapters=adapters,
            cache=cache,
            planner=StrategyPlanner(
                catalog,
                api_enabled=SourceKind.API in adapters,
                ttl_by_volatility=ttls,
                stale_if_error_seconds=config.stale_if_error_seconds,
                policy_version=config.cache_policy_version,
                table_page_size=config.table_page_size,
                chart_series_cap=config.chart_series_cap,
                complexity_threshold=config.complexity_threshold,
            ),
            constructor=QueryConstructor(
                catalog,
                entry_timeout_ms=config.entry_timeout_ms,
                enabled_sources=list(adapters),
            ),
            optimizer=QueryOptimizer(
                catalog,
                table_page_size=config.table_page_size,
                chart_series_cap=config.chart_series_cap,
            ),
            coordinator=ExecutionCoordinator(adapters, max_concurrency=config.max_concurrency),
            recovery=ErrorRecoveryController(
                max_retries=config.max_retries,
                backoff_base_ms=config.backoff_base_ms,
                backoff_cap_ms=config.backoff_cap_ms,
            ),
            recorder=PerformanceRecorder(sla_threshold_ms=config.sla_threshold_ms, sink=sink),
            agent_id=config.agent_id,
            request_timeout_ms=config.request_timeout_ms,
            scope_keys=config.cache_scope_keys,
        )

    # --- Lifecycle ---

    async def __aenter__(self) -> "OrchestrationEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        for adapter in self.adapters.values():
            await adapter.start()
        logger.info(
            "Engine %s started with sources: %s",
            self.agent_id, sorted(k.value for k in self.adapters) or "none",
        )

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
        await self.coordinator.close()
        await self.cache.close()

    # --- Public API ---

    async def handle(self, payload: Mapping[str, Any], deadline_ms: int | None = None) -> dict[str, Any]:
        """Validate an upstream intent payload and answer it.

        Never raises for request-level problems: every failure becomes an
        error envelope.
        """
        ctx = RequestContext(self.recorder.start_request())
        try:
            intent = QueryIntent.from_payload(payload)
        except KeystoneError as e:
            return self._fail(ctx, e)
        return await self._handle(intent, ctx, deadline_ms)

    async def handle_intent(self, intent: QueryIntent, deadline_ms: int | None = None) -> dict[str, Any]:
        """Answer an already validated intent."""
        ctx = RequestContext(self.recorder.start_request())
        return await self._handle(intent, ctx, deadline_ms)

    async def invalidate(self, tag: str) -> int:
        """Invalidate every cached result carrying tag (e.g. 'table:workforce')."""
        affected = await self.cache.invalidate(tag)
        logger.info("Invalidated tag %r (%d cached results)", tag, affected)
        return affected

    # --- Request flow ---

    async def _handle(self, intent: QueryIntent, ctx: RequestContext, deadline_ms: int | None) -> dict[str, Any]:
        budget_ms = deadline_ms if deadline_ms is not None else self.request_timeout_ms
        deadline = self._clock() + budget_ms / 1_000
        try:
            return await self._run(intent, ctx, deadline)
        except KeystoneError as e:
            return self._fail(ctx, e)
        except Exception as e:
            logger.exception("[%s] Unexpected error handling %s", ctx.request_id[:8], intent.contract)
            return self._fail(ctx, KeystoneError(f"{type(e).__name__}: {e}"))

    async def _run(self, intent: QueryIntent, ctx: RequestContext, deadline: float) -> dict[str, Any]:
        with ctx.metrics.stage("plan"):
            strategy = self.planner.plan(intent)
        ctx.transition(RequestState.PLANNED)

        policy = strategy.cache_policy
        key = cache_key(intent, policy.version, self.scope_keys)
        ctx.transition(RequestState.CACHE_CHECK)

        if policy.cacheable:
            with ctx.metrics.stage("cache_check") as timer:
                entry = await self._lookup(key)
                hit = entry is not None and self.cache.is_valid(entry)
                timer.outcome = "hit" if hit else "miss"
            self.recorder.record_cache_lookup(hit)
            if hit:
                ctx.transition(RequestState.FORMAT)
                data = AggregatedData.from_cache_value(
                    entry.value, data_source="cache", cached_at=entry.created_at
                )
                cache_strategy = {
                    "status": "hit",
                    "key": key,
                    "ttl_seconds": entry.ttl_seconds,
                    "tags": sorted(entry.dependency_tags),
                    "written": False,
                }
                return self._complete(ctx, _Outcome(data=data, cache_strategy=cache_strategy))
            ctx.stale = entry

        def compute():
            return self._compute(intent, strategy, key, ctx, deadline)

        if self.cache.is_inflight(key):
            remaining = deadline - self._clock()
            try:
                async with asyncio.timeout(max(remaining, 0)):
                    outcome = await self.cache.single_flight_get(key, compute)
            except TimeoutError:
                raise DeadlineExceeded(
                    f"Request deadline spent waiting for the in-flight computation of {intent.contract}"
                ) from None
            ctx.transition(RequestState.FORMAT)
            coalesced = _Outcome(
                data=outcome.data,
                executed_queries=outcome.executed_queries,
                optimization_applied=outcome.optimization_applied,
                cache_strategy=dict(outcome.cache_strategy, status="coalesced"),
            )
            return self._complete(ctx, coalesced)

        outcome = await self.cache.single_flight_get(key, compute)
        return self._complete(ctx, outcome)

    async def _compute(
        self,
        intent: QueryIntent,
        strategy: QueryStrategy,
        key: str,
        ctx: RequestContext,
        deadline: float,
    ) -> _Outcome:
        ctx.transition(RequestState.CONSTRUCTED)
        with ctx.metrics.stage("construct"):
            plan = self.constructor.construct(intent, strategy)
        ctx.transition(RequestState.OPTIMIZED)
        with ctx.metrics.stage("optimize"):
            plan, applied = self.optimizer.rewrite(plan, intent)
        ctx.transition(RequestState.SECURED)
        with ctx.metrics.stage("secure"):
            plan = self.validator.validate(plan)

        slots = [_Slot(entry) for entry in plan]
        data = await self._execute(intent, strategy, plan.context, slots, ctx, deadline)

        final_plan = QueryPlan(tuple(s.entry for s in slots), plan.context)
        if data is None:
            with ctx.metrics.stage("aggregate"):
                data = self.aggregator.aggregate(final_plan, _results(slots))
        ctx.transition(RequestState.AGGREGATED)

        ctx.transition(RequestState.CACHE_WRITE)
        policy = strategy.cache_policy
        cache_strategy: dict[str, Any] = {
            "status": "miss" if policy.cacheable else "bypass",
            "key": key,
            "ttl_seconds": policy.ttl_seconds,
            "tags": [],
            "written": False,
        }
        if data.data_source == "cached_fallback":
            cache_strategy["status"] = "stale_fallback"
        elif policy.cacheable and not data.degraded:
            tags = derive_tags(intent, final_plan)
            cache_strategy["tags"] = sorted(tags)
            with ctx.metrics.stage("cache_write") as timer:
                try:
                    await self.cache.set(
                        key,
                        data.to_cache_value(),
                        ttl=policy.ttl_seconds,
                        tags=tags,
                        stale_if_error_seconds=policy.stale_if_error_seconds,
                    )
                    cache_strategy["written"] = True
                except CacheError as e:
                    timer.outcome = "error"
                    logger.warning("[%s] Cache write failed, result not cached: %s", ctx.request_id[:8], e)

        return _Outcome(
            data=data,
            executed_queries=[_describe(s) for s in slots],
            optimization_applied=applied,
            cache_strategy=cache_strategy,
        )

    async def _execute(
        self,
        intent: QueryIntent,
        strategy: QueryStrategy,
        context: Mapping[str, Any],
        slots: list[_Slot],
        ctx: RequestContext,
        deadline: float,
    ) -> AggregatedData | None:
        """Run the plan with retries and fallbacks.

        Returns:
            None when the slots hold the final results (aggregate them), or
            degraded stale data when a required entry could not be recovered

        Raises:
            KeystoneError: Fatal failure, or exhausted recovery with nothing stale
        """
        tried: dict[str, set[SourceKind]] = {}
        for slot in slots:
            tried.setdefault(slot.entry.contract, set()).add(slot.entry.source_kind)

        pending = list(slots)
        while True:
            ctx.transition(RequestState.EXECUTING)
            plan = QueryPlan(tuple(s.entry for s in slots), context)
            attempts = {slots.index(s): s.attempts + 1 for s in pending}
            start = time.perf_counter()
            report = await self.coordinator.execute(plan, deadline, attempt=attempts, indices=list(attempts))
            round_ms = (time.perf_counter() - start) * 1_000

            for result in report.results:
                slot = slots[result.index]
                slot.result = result
                slot.attempts = result.attempt
                ctx.metrics.add(
                    "execute",
                    result.timing_ms if result.ok else round_ms,
                    "ok" if result.ok else result.error_kind,
                    result.attempt,
                )

            failed = [s for s in pending if not s.result.ok]
            if not failed:
                return None
            if report.failed:
                # Required entries decide first; a degrade or fatal ends the round
                failed.sort(key=lambda s: not s.entry.required)

            ctx.transition(RequestState.RECOVERING)
            remaining = deadline - self._clock()
            retry: list[_Slot] = []
            fallbacks: list[tuple[_Slot, SourceKind]] = []
            delay = 0.0
            for slot in failed:
                contract = slot.entry.contract
                decision = self.recovery.decide(
                    slot.result,
                    slot.entry,
                    slot.retries,
                    self._fallbacks_left(strategy, contract, tried[contract]),
                    remaining,
                )
                logger.warning(
                    "[%s] %s via %s: %s",
                    ctx.request_id[:8], contract, slot.entry.source_kind.value, decision.reason,
                )
                if decision.action is RecoveryAction.FATAL:
                    raise error_from_kind(slot.result.error_kind, slot.result.detail)
                if decision.action is RecoveryAction.DEGRADE:
                    return self._degrade(strategy, slot, ctx)
                if decision.action is RecoveryAction.RETRY:
                    slot.retries += 1
                    retry.append(slot)
                    delay = max(delay, decision.delay_seconds)
                elif decision.action is RecoveryAction.FALLBACK:
                    fallbacks.append((slot, decision.source))

            new_slots = self._substitute(intent, context, slots, fallbacks, tried, ctx) if fallbacks else []
            pending = [s for s in retry if s in slots] + new_slots
            if not pending:
                return None
            if retry and delay > 0:
                await asyncio.sleep(delay)

    def _degrade(self, strategy: QueryStrategy, slot: _Slot, ctx: RequestContext) -> AggregatedData:
        error = error_from_kind(slot.result.error_kind, slot.result.detail)
        data = self.recovery.degrade_from_stale(ctx.stale, strategy.cache_policy, self.cache.now())
        if data is None:
            raise error
        data.warnings.append(
            f"{slot.entry.contract} failed ({slot.result.error_kind}); serving cached data"
        )
        logger.warning(
            "[%s] Serving stale result for %s after %s",
            ctx.request_id[:8], slot.entry.contract, slot.result.error_kind,
        )
        return data

    def _substitute(
        self,
        intent: QueryIntent,
        context: Mapping[str, Any],
        slots: list[_Slot],
        fallbacks: list[tuple[_Slot, SourceKind]],
        tried: dict[str, set[SourceKind]],
        ctx: RequestContext,
    ) -> list[_Slot]:
        """Replace failed entries with entries for their fallback source.

        The whole contract is rebuilt on the new source, so every slot reading
        the same contract from the failed source is replaced.
        """
        ctx.transition(RequestState.CONSTRUCTED)
        groups: list[tuple[list[_Slot], QueryPlan]] = []
        handled: set[tuple[str, SourceKind]] = set()
        with ctx.metrics.stage("construct"):
            for slot, kind in fallbacks:
                contract, failed_kind = slot.entry.contract, slot.entry.source_kind
                if (contract, failed_kind) in handled:
                    continue
                handled.add((contract, failed_kind))
                group = [
                    s for s in slots
                    if s.entry.contract == contract and s.entry.source_kind is failed_kind
                ]
                metric = contract.split("@", 1)[0]
                entries = self.constructor.construct_entries(
                    intent, kind, required=slot.entry.required, metric=metric
                )
                tried[contract].add(kind)
                groups.append((group, QueryPlan(tuple(entries), context)))

        ctx.transition(RequestState.OPTIMIZED)
        with ctx.metrics.stage("optimize"):
            groups = [(group, self.optimizer.optimize(plan, intent)) for group, plan in groups]
        ctx.transition(RequestState.SECURED)
        with ctx.metrics.stage("secure"):
            groups = [(group, self.validator.validate(plan)) for group, plan in groups]

        new_slots: list[_Slot] = []
        for group, plan in groups:
            replacement = [_Slot(entry) for entry in plan]
            position = min(slots.index(s) for s in group)
            for s in group:
                slots.remove(s)
            slots[position:position] = replacement
            new_slots.extend(replacement)
        return new_slots

    def _fallbacks_left(
        self,
        strategy: QueryStrategy,
        contract: str,
        tried: set[SourceKind],
    ) -> list[SourceKind]:
        definition = self.catalog.get(contract.split("@", 1)[0])
        return [
            kind for kind in strategy.fallback_sources
            if kind is not SourceKind.CACHE
            and kind not in tried
            and kind in self.coordinator.adapters
            and _serves(definition, kind)
        ]

    async def _lookup(self, key: str) -> CacheEntry | None:
        try:
            return await self.cache.get(key, allow_stale=True)
        except CacheError as e:
            logger.warning("Cache read failed, treating as miss: %s", e)
            return None

    # --- Output ---

    def _complete(self, ctx: RequestContext, outcome: _Outcome) -> dict[str, Any]:
        ctx.transition(RequestState.MONITORED)
        performance = self.recorder.finish(ctx.metrics)
        query_info = {
            "executed_queries": outcome.executed_queries,
            "optimization_applied": outcome.optimization_applied,
            "cache_strategy": outcome.cache_strategy,
        }
        envelope = success_envelope(self.agent_id, outcome.data, query_info, performance, self.cache.now())
        ctx.transition(RequestState.DONE)
        return envelope

    def _fail(self, ctx: RequestContext, error: KeystoneError) -> dict[str, Any]:
        if ctx.state not in TERMINAL_STATES:
            ctx.transition(RequestState.ERROR)
        logger.error("[%s] Request failed (%s): %s", ctx.request_id[:8], error.error_type, error.message)
        self.recorder.finish(ctx.metrics)

        fallback = None
        if not error.fatal and ctx.stale is not None:
            fallback = AggregatedData.from_cache_value(
                ctx.stale.value,
                data_source="stale",
                cached_at=ctx.stale.created_at,
                degraded=True,
            )
        return error_envelope(self.agent_id, error, fallback, self.cache.now())


def _results(slots: Sequence[_Slot]) -> list[ExecutionResult]:
    """Latest result per slot, re-indexed to the slot's current position."""
    return [
        replace(slot.result, index=i)
        for i, slot in enumerate(slots)
        if slot.result is not None
    ]


def _serves(definition: MetricDefinition, kind: SourceKind) -> bool:
    if kind is SourceKind.SQL:
        return bool(definition.table)
    if kind is SourceKind.API:
        return bool(definition.api_endpoint)
    if kind is SourceKind.STREAM:
        return bool(definition.stream_channel)
    return False


def _describe(slot: _Slot) -> dict[str, Any]:
    result = slot.result
    if result is None:
        outcome = "skipped"
    elif result.ok:
        outcome = "ok"
    else:
        outcome = result.error_kind
    return {
        "source": slot.entry.source_kind.value,
        "contract": slot.entry.contract,
        "required": slot.entry.required,
        "attempts": slot.attempts,
        "outcome": outcome,
        "timing_ms": round(result.timing_ms, 3) if result is not None and result.ok else None,
        "query": describe_payload(slot.entry.payload),
    }
