"""Strategy Planner for KEYSTONE.

Priority-ordered deterministic rules that choose candidate sources, fallback
order and cache policy for an intent. First match wins.

Routing rules (priority order):
    1. Real-time intent → STREAM, never cached
    2. External-system metric → API, fallback to the cached last-known value
    3. Otherwise → SQL, fallback to API when the metric has an endpoint and the
       API source is configured, else cache-only degraded mode

TTL comes from the metric's volatility class, shifted by the time grain of the
dimension: a per-hour breakdown goes stale faster than a per-quarter one.

Design Principles:
    - Pure: output depends only on the intent (plus static configuration)
    - Explainable: the matched rule is recorded in optimization_hints
"""

from types import MappingProxyType
from typing import Mapping

from keystone.catalog import MetricCatalog, Volatility
from keystone.errors import InvalidIntentError
from keystone.models import CachePolicy, QueryIntent, QueryStrategy, SourceKind, WidgetKind

# Dimension time grains that override the metric's volatility class
_FAST_GRAINS = {"minute", "hour"}
_SLOW_GRAINS = {"month", "quarter", "year"}

_DEFAULT_TTLS: Mapping[Volatility, int] = MappingProxyType({
    Volatility.HISTORICAL: 3_600,
    Volatility.DAILY: 900,
    Volatility.NEAR_REALTIME: 60,
})


class StrategyPlanner:
    """Maps a QueryIntent to a QueryStrategy.

    Args:
        catalog: Metric catalog
        api_enabled: Whether the API source is configured (enables SQL → API fallback)
        ttl_by_volatility: TTL seconds per volatility class
        stale_if_error_seconds: Stale-if-error window for cacheable policies
        policy_version: Cache policy version stamped into keys
        table_page_size: Default table page size hint
        chart_series_cap: Default chart point cap hint
        complexity_threshold: filters + series above which an intent is 'complex'
    """

    def __init__(
        self,
        catalog: MetricCatalog,
        api_enabled: bool = False,
        ttl_by_volatility: Mapping[Volatility, int] | None = None,
        stale_if_error_seconds: int = 1_800,
        policy_version: str = "v1",
        table_page_size: int = 100,
        chart_series_cap: int = 500,
        complexity_threshold: int = 4,
    ) -> None:
        self.catalog = catalog
        self.api_enabled = api_enabled
        self.ttl_by_volatility = dict(ttl_by_volatility or _DEFAULT_TTLS)
        self.stale_if_error_seconds = stale_if_error_seconds
        self.policy_version = policy_version
        self.table_page_size = table_page_size
        self.chart_series_cap = chart_series_cap
        self.complexity_threshold = complexity_threshold

    def plan(self, intent: QueryIntent) -> QueryStrategy:
        """Choose sources and cache policy for an intent.

        Raises:
            InvalidIntentError: Unknown metric, or dimension not allowed for it
        """
        if not intent.metric or not intent.dimension:
            raise InvalidIntentError("Intent needs both metric and dimension")
        definition = self.catalog.resolve(intent.metric, intent.dimension)
        volatility = self.volatility_for(intent)
        hints: dict[str, object] = {
            "volatility": volatility.value,
            "complexity": self._complexity(intent),
            "limit": self._limit_hint(intent),
        }

        # Rule 1: Real-time
        if intent.realtime:
            if not definition.stream_channel:
                raise InvalidIntentError(f"Metric '{intent.metric}' has no real-time feed")
            hints["rule"] = "realtime"
            return QueryStrategy(
                primary_sources=(SourceKind.STREAM,),
                fallback_sources=(),
                cache_policy=CachePolicy(
                    ttl_seconds=0, cacheable=False, version=self.policy_version
                ),
                optimization_hints=MappingProxyType(hints),
            )

        policy = CachePolicy(
            ttl_seconds=self.ttl_by_volatility[volatility],
            stale_if_error_seconds=self.stale_if_error_seconds,
            version=self.policy_version,
        )

        # Rule 2: External-system metric
        if definition.external:
            hints["rule"] = "external"
            return QueryStrategy(
                primary_sources=(SourceKind.API,),
                fallback_sources=(SourceKind.CACHE,),
                cache_policy=policy,
                optimization_hints=MappingProxyType(hints),
            )

        # Rule 3: Relational store
        if not definition.table:
            raise InvalidIntentError(
                f"Metric '{intent.metric}' is only available in real time; set realtime=true"
            )
        if definition.api_endpoint and self.api_enabled:
            fallback: tuple[SourceKind, ...] = (SourceKind.API,)
            hints["rule"] = "sql_with_api_fallback"
        else:
            fallback = (SourceKind.CACHE,)
            hints["rule"] = "sql_cache_only_fallback"
        return QueryStrategy(
            primary_sources=(SourceKind.SQL,),
            fallback_sources=fallback,
            cache_policy=policy,
            optimization_hints=MappingProxyType(hints),
        )

    def volatility_for(self, intent: QueryIntent) -> Volatility:
        """Metric volatility, shifted by the dimension's time grain."""
        volatility = self.catalog.get(intent.metric).volatility
        if intent.dimension in _FAST_GRAINS:
            return Volatility.NEAR_REALTIME
        if intent.dimension in _SLOW_GRAINS and volatility is Volatility.DAILY:
            return Volatility.HISTORICAL
        return volatility

    def _complexity(self, intent: QueryIntent) -> str:
        weight = len(intent.filters) + len(intent.series)
        return "complex" if weight > self.complexity_threshold else "simple"

    def _limit_hint(self, intent: QueryIntent) -> int:
        if intent.kind is WidgetKind.KPI:
            return 1
        if intent.kind is WidgetKind.TABLE:
            page_size = intent.metadata.get("page_size")
            if isinstance(page_size, int) and not isinstance(page_size, bool) and page_size > 0:
                return page_size
            return self.table_page_size
        return self.chart_series_cap
