"""Tests for OrchestrationEngine — end-to-end request flow.

Adapters are scripted fakes and the cache runs on a manual clock, so every
scenario is deterministic:
- Cold miss is computed, cached and tagged; a repeat is a cache hit
- Transient failures are retried with backoff, then fall back or degrade
- Stale-if-error serves labelled stale data inside its window only
- Security violations short-circuit before any adapter runs
- Concurrent identical requests are coalesced into one computation
"""

import asyncio
from dataclasses import replace
from typing import Any

import pytest

from keystone.adapters import SourceAdapter
from keystone.cache import CacheStore, MemoryBackend, cache_key
from keystone.catalog import DEFAULT_CATALOG, MetricCatalog, default_catalog
from keystone.engine import QueryConstructor, SelectItem
from keystone.errors import SourceTimeout, SourceUnavailable, TransientNetworkError
from keystone.models import QueryIntent, SourceKind
from keystone.pipeline import (
    ErrorRecoveryController,
    OrchestrationEngine,
    PerformanceRecorder,
    RequestContext,
    RequestState,
)

BURNOUT = {"chart": "bar", "metric": "burnout_risk_score", "dimension": "department"}
BURNOUT_ROWS = [
    {"department": "Eng", "burnout_risk_score": 0.42},
    {"department": "Ops", "burnout_risk_score": 0.31},
]
CACHED_VALUE = {
    "records": [{"department": "Eng", "burnout_risk_score": 0.40}],
    "schema": {"department": "string", "burnout_risk_score": "number"},
    "sources_used": ["sql"],
}


# --- Fakes ---


class FakeClock:
    """Manually advanced wall clock for the cache."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdapter(SourceAdapter):
    """Plays back outcomes in order; the last outcome repeats.

    An outcome is either a list of rows or an exception to raise.
    """

    def __init__(self, kind: SourceKind, *outcomes: Any) -> None:
        self.kind = kind
        self.outcomes = list(outcomes)
        self.calls: list[Any] = []
        self.started = False
        self.closed = False

    async def execute(self, payload: Any, timeout: float) -> list[dict[str, Any]]:
        self.calls.append(payload)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return [dict(row) for row in outcome]

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True


class GatedAdapter(ScriptedAdapter):
    """Blocks every call until release is set."""

    def __init__(self, kind: SourceKind, rows: list[dict[str, Any]]) -> None:
        super().__init__(kind, rows)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, payload: Any, timeout: float) -> list[dict[str, Any]]:
        self.entered.set()
        await self.release.wait()
        return await super().execute(payload, timeout)


class HangingAdapter(ScriptedAdapter):
    async def execute(self, payload: Any, timeout: float) -> list[dict[str, Any]]:
        self.calls.append(payload)
        await asyncio.sleep(5)
        return []


class LeakyConstructor(QueryConstructor):
    """Selects a column that is not allow-listed."""

    def _build_sql(self, intent, definition):
        payload = super()._build_sql(intent, definition)
        return replace(payload, columns=payload.columns + (SelectItem(column="salary"),))


def make_engine(
    adapters: dict[SourceKind, SourceAdapter],
    clock: FakeClock,
    **kwargs: Any,
) -> OrchestrationEngine:
    """Engine with an in-memory cache on the manual clock and fast backoff."""
    return OrchestrationEngine(
        adapters=adapters,
        cache=CacheStore(backend=MemoryBackend(), clock=clock),
        recovery=ErrorRecoveryController(max_retries=2, backoff_base_ms=1, backoff_cap_ms=5),
        **kwargs,
    )


def key_for(payload: dict[str, Any]) -> str:
    return cache_key(QueryIntent.from_payload(payload), "v1")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# --- Cache ---


class TestCaching:
    """Cold misses are computed and written; repeats are served from cache."""

    @pytest.mark.asyncio
    async def test_cold_miss_computes_and_writes(self, clock: FakeClock) -> None:
        """First request reads SQL and writes a tagged entry with the daily TTL."""
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "success"
        assert envelope["data"]["records"] == BURNOUT_ROWS
        assert envelope["data"]["metadata"]["data_source"] == "live"
        assert envelope["data"]["metadata"]["freshness"] == {"status": "fresh"}

        strategy = envelope["query_info"]["cache_strategy"]
        assert strategy["status"] == "miss"
        assert strategy["written"] is True
        assert strategy["ttl_seconds"] == 900
        assert strategy["key"] == key_for(BURNOUT)
        assert "table:employee_metrics" in strategy["tags"]
        assert "metric:burnout_risk_score" in strategy["tags"]

        (executed,) = envelope["query_info"]["executed_queries"]
        assert executed["source"] == "sql"
        assert executed["outcome"] == "ok"
        assert executed["attempts"] == 1
        assert executed["query"]["sql"].startswith("SELECT")

    @pytest.mark.asyncio
    async def test_repeat_is_a_hit(self, clock: FakeClock) -> None:
        """Second identical request never reaches the adapter."""
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        await engine.handle(BURNOUT)
        clock.advance(30)
        envelope = await engine.handle(BURNOUT)

        assert len(sql.calls) == 1
        assert envelope["query_info"]["cache_strategy"]["status"] == "hit"
        assert envelope["data"]["records"] == BURNOUT_ROWS
        freshness = envelope["data"]["metadata"]["freshness"]
        assert freshness["status"] == "cached"
        assert freshness["age_seconds"] == 30.0
        assert engine.recorder.cache_hit_ratio == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_expired_entry_recomputed(self, clock: FakeClock) -> None:
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        await engine.handle(BURNOUT)
        clock.advance(900)
        envelope = await engine.handle(BURNOUT)

        assert len(sql.calls) == 2
        assert envelope["query_info"]["cache_strategy"]["status"] == "miss"

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompute(self, clock: FakeClock) -> None:
        """A tag invalidation makes the next request a miss."""
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)
        await engine.handle(BURNOUT)

        affected = await engine.invalidate("table:employee_metrics")
        clock.advance(1)
        second = await engine.handle(BURNOUT)
        third = await engine.handle(BURNOUT)

        assert affected == 1
        assert second["query_info"]["cache_strategy"]["status"] == "miss"
        assert third["query_info"]["cache_strategy"]["status"] == "hit"
        assert len(sql.calls) == 2

    @pytest.mark.asyncio
    async def test_tenants_do_not_share_entries(self, clock: FakeClock) -> None:
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        await engine.handle(dict(BURNOUT, metadata={"tenant_id": "acme"}))
        other = await engine.handle(dict(BURNOUT, metadata={"tenant_id": "globex"}))
        again = await engine.handle(dict(BURNOUT, metadata={"tenant_id": "acme"}))

        assert other["query_info"]["cache_strategy"]["status"] == "miss"
        assert again["query_info"]["cache_strategy"]["status"] == "hit"
        assert len(sql.calls) == 2

    @pytest.mark.asyncio
    async def test_realtime_bypasses_cache(self, clock: FakeClock) -> None:
        """Real-time intents are streamed and never written."""
        stream = ScriptedAdapter(SourceKind.STREAM, [{"department": "Eng", "active_sessions": 14}])
        engine = make_engine({SourceKind.STREAM: stream}, clock)
        payload = {"chart": "kpi", "metric": "active_sessions", "dimension": "department", "realtime": True}

        first = await engine.handle(payload)
        second = await engine.handle(payload)

        assert first["status"] == "success"
        assert first["query_info"]["cache_strategy"]["status"] == "bypass"
        assert first["query_info"]["cache_strategy"]["written"] is False
        assert second["query_info"]["cache_strategy"]["status"] == "bypass"
        assert len(stream.calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_coalesce(self, clock: FakeClock) -> None:
        """Followers wait for the leader's computation instead of running their own."""
        sql = GatedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        leader = asyncio.create_task(engine.handle(BURNOUT))
        await sql.entered.wait()
        follower = asyncio.create_task(engine.handle(BURNOUT))
        for _ in range(3):
            await asyncio.sleep(0)
        sql.release.set()
        results = await asyncio.gather(leader, follower)

        statuses = {r["query_info"]["cache_strategy"]["status"] for r in results}
        assert statuses == {"miss", "coalesced"}
        assert len(sql.calls) == 1
        assert results[0]["data"]["records"] == results[1]["data"]["records"]

    @pytest.mark.asyncio
    async def test_cancelled_leader_leaves_follower_an_error(self, clock: FakeClock) -> None:
        """A follower whose leader is cancelled still gets an envelope."""
        sql = GatedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        leader = asyncio.create_task(engine.handle(BURNOUT))
        await sql.entered.wait()
        follower = asyncio.create_task(engine.handle(BURNOUT))
        for _ in range(3):
            await asyncio.sleep(0)
        leader.cancel()

        envelope = await follower

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "source_unavailable"
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert not engine.cache.is_inflight(key_for(BURNOUT))

    @pytest.mark.asyncio
    async def test_page_size_is_part_of_key(self, clock: FakeClock) -> None:
        """Table pages of different sizes are different results."""
        rows = [{"department": f"D{i:02d}", "headcount": i} for i in range(50)]
        sql = ScriptedAdapter(SourceKind.SQL, rows)
        engine = make_engine({SourceKind.SQL: sql}, clock)
        table = {"chart": "table", "metric": "headcount", "dimension": "department"}

        small = await engine.handle(dict(table, metadata={"page_size": 5}))
        big = await engine.handle(dict(table, metadata={"page_size": 40}))
        small_again = await engine.handle(dict(table, metadata={"page_size": 5}))

        assert small["query_info"]["cache_strategy"]["status"] == "miss"
        assert big["query_info"]["cache_strategy"]["status"] == "miss"
        assert small_again["query_info"]["cache_strategy"]["status"] == "hit"
        assert small["query_info"]["cache_strategy"]["key"] != big["query_info"]["cache_strategy"]["key"]
        assert [payload.limit for payload in sql.calls] == [5, 40]

    @pytest.mark.asyncio
    async def test_row_level_attribute_partitions_key(self, clock: FakeClock) -> None:
        """Principals filtered by a row-level policy never share entries."""
        catalog = MetricCatalog.from_dict(
            dict(DEFAULT_CATALOG, row_level_policies={"workforce": {"location": "site"}})
        )
        sql = ScriptedAdapter(SourceKind.SQL, [{"department": "Eng", "headcount": 4}])
        engine = make_engine({SourceKind.SQL: sql}, clock, catalog=catalog, scope_keys=())
        headcount = {"chart": "bar", "metric": "headcount", "dimension": "department"}

        await engine.handle(dict(headcount, metadata={"site": "Berlin"}))
        paris = await engine.handle(dict(headcount, metadata={"site": "Paris"}))

        assert engine.scope_keys == ("site",)
        assert paris["query_info"]["cache_strategy"]["status"] == "miss"
        assert [payload.params["rls_location"] for payload in sql.calls] == ["Berlin", "Paris"]


# --- Recovery ---


class TestRecovery:
    """Retry, fallback and degradation paths."""

    @pytest.mark.asyncio
    async def test_timeouts_retried_until_success(self, clock: FakeClock) -> None:
        """Two timeouts then rows: three attempts, one success, not degraded."""
        sql = ScriptedAdapter(
            SourceKind.SQL,
            SourceTimeout("slow"),
            SourceTimeout("slow"),
            BURNOUT_ROWS,
        )
        engine = make_engine({SourceKind.SQL: sql}, clock)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "success"
        assert envelope["data"]["metadata"]["degraded"] is False
        assert len(sql.calls) == 3
        assert envelope["query_info"]["executed_queries"][0]["attempts"] == 3
        execute_attempts = [
            s["attempt"] for s in envelope["performance"]["samples"] if s["stage"] == "execute"
        ]
        assert execute_attempts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_unavailable_sql_falls_back_to_api(self, clock: FakeClock) -> None:
        """A metric with an endpoint is rebuilt against the API when SQL is down."""
        sql = ScriptedAdapter(SourceKind.SQL, SourceUnavailable("connection refused"))
        api = ScriptedAdapter(SourceKind.API, [{"department": "Eng", "overtime_hours": 12.5}])
        engine = make_engine({SourceKind.SQL: sql, SourceKind.API: api}, clock)

        envelope = await engine.handle({"chart": "bar", "metric": "overtime_hours", "dimension": "department"})

        assert envelope["status"] == "success"
        assert envelope["data"]["records"] == [{"department": "Eng", "overtime_hours": 12.5}]
        assert envelope["data"]["metadata"]["sources_used"] == ["api"]
        assert len(sql.calls) == 1
        assert len(api.calls) == 1
        assert api.calls[0].path() == "/metrics/overtime_hours"
        assert [q["source"] for q in envelope["query_info"]["executed_queries"]] == ["api"]
        assert envelope["query_info"]["cache_strategy"]["written"] is True

    @pytest.mark.asyncio
    async def test_optional_enrichment_failure_degrades(self, clock: FakeClock) -> None:
        """A failed optional entry is dropped; the result is degraded and not cached."""
        sql = ScriptedAdapter(SourceKind.SQL, [{"department": "Eng", "engagement_score": 0.7}])
        api = ScriptedAdapter(SourceKind.API, SourceUnavailable("survey service down"))
        engine = make_engine({SourceKind.SQL: sql, SourceKind.API: api}, clock)

        envelope = await engine.handle({"chart": "bar", "metric": "engagement_score", "dimension": "department"})

        assert envelope["status"] == "success"
        metadata = envelope["data"]["metadata"]
        assert metadata["degraded"] is True
        assert metadata["warnings"]
        assert envelope["data"]["records"] == [{"department": "Eng", "engagement_score": 0.7}]
        strategy = envelope["query_info"]["cache_strategy"]
        assert strategy["status"] == "miss"
        assert strategy["written"] is False

    @pytest.mark.asyncio
    async def test_stale_served_within_window(self, clock: FakeClock) -> None:
        """Every source down, entry 1200s old (TTL 900 + 1800 stale window)."""
        sql = ScriptedAdapter(SourceKind.SQL, TransientNetworkError("connection reset"))
        engine = make_engine({SourceKind.SQL: sql}, clock)
        await engine.cache.set(key_for(BURNOUT), CACHED_VALUE, ttl=900, stale_if_error_seconds=1_800)
        clock.advance(1_200)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "success"
        metadata = envelope["data"]["metadata"]
        assert metadata["degraded"] is True
        assert metadata["data_source"] == "cached_fallback"
        assert metadata["freshness"]["status"] == "stale"
        assert metadata["freshness"]["age_seconds"] == 1_200.0
        assert envelope["data"]["records"] == CACHED_VALUE["records"]
        assert envelope["query_info"]["cache_strategy"]["status"] == "stale_fallback"
        assert envelope["query_info"]["cache_strategy"]["written"] is False
        # initial attempt plus two retries
        assert len(sql.calls) == 3

    @pytest.mark.asyncio
    async def test_stale_outside_window_is_an_error(self, clock: FakeClock) -> None:
        """Past the stale window the error surfaces, with the stale data attached."""
        sql = ScriptedAdapter(SourceKind.SQL, TransientNetworkError("connection reset"))
        engine = make_engine({SourceKind.SQL: sql}, clock)
        await engine.cache.set(key_for(BURNOUT), CACHED_VALUE, ttl=900, stale_if_error_seconds=1_800)
        clock.advance(2_710)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "transient_network_error"
        fallback = envelope["fallback_data"]
        assert fallback["metadata"]["data_source"] == "stale"
        assert fallback["metadata"]["degraded"] is True
        assert fallback["records"] == CACHED_VALUE["records"]

    @pytest.mark.asyncio
    async def test_no_stale_entry_is_an_error(self, clock: FakeClock) -> None:
        sql = ScriptedAdapter(SourceKind.SQL, SourceUnavailable("down"))
        engine = make_engine({SourceKind.SQL: sql}, clock)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "source_unavailable"
        assert envelope["fallback_data"] is None

    @pytest.mark.asyncio
    async def test_request_deadline(self, clock: FakeClock) -> None:
        sql = HangingAdapter(SourceKind.SQL)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        envelope = await engine.handle(BURNOUT, deadline_ms=50)

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "deadline_exceeded"
        await engine.close()


# --- Security and validation ---


class TestRejections:
    """Requests that never reach a source."""

    @pytest.mark.asyncio
    async def test_security_violation_short_circuits(self, clock: FakeClock) -> None:
        """A non-allow-listed column is fatal: no adapter call, no stale fallback."""
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        catalog = default_catalog()
        engine = make_engine(
            {SourceKind.SQL: sql},
            clock,
            catalog=catalog,
            constructor=LeakyConstructor(catalog, enabled_sources=[SourceKind.SQL]),
        )
        await engine.cache.set(key_for(BURNOUT), CACHED_VALUE, ttl=900, stale_if_error_seconds=1_800)
        clock.advance(1_000)

        envelope = await engine.handle(BURNOUT)

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "security_violation"
        assert "salary" in envelope["error"]["message"]
        assert envelope["fallback_data"] is None
        assert sql.calls == []

    @pytest.mark.asyncio
    async def test_filter_on_unlisted_field_rejected(self, clock: FakeClock) -> None:
        """A user filter on a field the table does not expose never runs or caches."""
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)
        payload = dict(BURNOUT, filters=[{"field": "salary", "op": ">", "value": 100_000}])

        envelope = await engine.handle(payload)

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "security_violation"
        assert "salary" in envelope["error"]["message"]
        assert sql.calls == []
        assert await engine.cache.get(key_for(payload), allow_stale=True) is None

    @pytest.mark.asyncio
    async def test_malformed_intent(self, clock: FakeClock) -> None:
        engine = make_engine({}, clock)

        envelope = await engine.handle({"chart": "bar", "metric": ""})

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "invalid_intent"

    @pytest.mark.asyncio
    async def test_unknown_metric(self, clock: FakeClock) -> None:
        engine = make_engine({}, clock)

        envelope = await engine.handle({"chart": "bar", "metric": "salary", "dimension": "department"})

        assert envelope["status"] == "error"
        assert envelope["error"]["error_type"] == "invalid_intent"
        assert "salary" in envelope["error"]["message"]


# --- Lifecycle and state machine ---


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_starts_and_closes_adapters(self, clock: FakeClock) -> None:
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)

        async with make_engine({SourceKind.SQL: sql}, clock) as engine:
            assert sql.started
            await engine.handle(BURNOUT)

        assert sql.closed

    @pytest.mark.asyncio
    async def test_handle_intent(self, clock: FakeClock) -> None:
        sql = ScriptedAdapter(SourceKind.SQL, BURNOUT_ROWS)
        engine = make_engine({SourceKind.SQL: sql}, clock)

        envelope = await engine.handle_intent(QueryIntent.from_payload(BURNOUT))

        assert envelope["status"] == "success"
        assert envelope["agent_id"] == "keystone-query-engine"


class TestRequestContext:
    """Transitions follow the table; terminal states are final."""

    def make_context(self) -> RequestContext:
        return RequestContext(PerformanceRecorder().start_request())

    def test_cache_hit_path(self) -> None:
        ctx = self.make_context()
        for state in [
            RequestState.PLANNED,
            RequestState.CACHE_CHECK,
            RequestState.FORMAT,
            RequestState.MONITORED,
            RequestState.DONE,
        ]:
            ctx.transition(state)

        assert ctx.history[0] is RequestState.INIT
        assert ctx.state is RequestState.DONE

    def test_illegal_transition_raises(self) -> None:
        ctx = self.make_context()
        with pytest.raises(RuntimeError, match="Illegal state transition"):
            ctx.transition(RequestState.EXECUTING)
        assert ctx.state is RequestState.INIT

    def test_any_active_state_may_fail(self) -> None:
        ctx = self.make_context()
        ctx.transition(RequestState.PLANNED)

        assert ctx.can_transition(RequestState.ERROR)
        ctx.transition(RequestState.ERROR)

        assert not ctx.can_transition(RequestState.PLANNED)
        with pytest.raises(RuntimeError):
            ctx.transition(RequestState.ERROR)

    def test_recovery_edges(self) -> None:
        ctx = self.make_context()
        for state in [
            RequestState.PLANNED,
            RequestState.CACHE_CHECK,
            RequestState.CONSTRUCTED,
            RequestState.OPTIMIZED,
            RequestState.SECURED,
            RequestState.EXECUTING,
            RequestState.RECOVERING,
        ]:
            ctx.transition(state)

        assert ctx.can_transition(RequestState.EXECUTING)
        assert ctx.can_transition(RequestState.CONSTRUCTED)
        assert ctx.can_transition(RequestState.AGGREGATED)
        assert not ctx.can_transition(RequestState.DONE)
