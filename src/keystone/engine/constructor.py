"""Query Constructor — intent + strategy → parameterized QueryPlan.

One builder per source kind. Builders only decide *what* to read (table and
columns, endpoint, channel); the intent's filters are attached to each entry
as residual filters, and the QueryOptimizer decides how far they can be pushed
into the payload.

A chart intent with series produces one entry per series (series filters are
always on the dimension), which the optimizer may merge back into one query.
Catalog enrichments produce optional (required=False) entries.
"""

import logging
from types import MappingProxyType
from typing import Callable, Sequence

from keystone.catalog import MetricCatalog, MetricDefinition
from keystone.engine.payloads import ApiPayload, SelectItem, SqlPayload, StreamPayload
from keystone.errors import UnsupportedIntentError
from keystone.models import Filter, PlanEntry, QueryIntent, QueryPlan, QueryStrategy, SourceKind

logger = logging.getLogger(__name__)

_Builder = Callable[[QueryIntent, MetricDefinition], object]


class QueryConstructor:
    """Builds per-source plan entries.

    Args:
        catalog: Metric catalog
        entry_timeout_ms: Timeout stamped on every entry
        enabled_sources: Source kinds that have an adapter (enrichments for
            other kinds are skipped; primary sources are never filtered here)
    """

    def __init__(
        self,
        catalog: MetricCatalog,
        entry_timeout_ms: int = 5_000,
        enabled_sources: Sequence[SourceKind] | None = None,
    ) -> None:
        self.catalog = catalog
        self.entry_timeout_ms = entry_timeout_ms
        self.enabled_sources = set(enabled_sources) if enabled_sources is not None else None
        self._builders: dict[SourceKind, _Builder] = {
            SourceKind.SQL: self._build_sql,
            SourceKind.API: self._build_api,
            SourceKind.STREAM: self._build_stream,
        }

    def construct(
        self,
        intent: QueryIntent,
        strategy: QueryStrategy,
        sources: Sequence[SourceKind] | None = None,
    ) -> QueryPlan:
        """Build the plan for the strategy's primary sources (or the given ones).

        Raises:
            UnsupportedIntentError: No constructor for a requested source kind
        """
        kinds = tuple(sources) if sources is not None else strategy.primary_sources
        entries: list[PlanEntry] = []
        for kind in kinds:
            entries.extend(self.construct_entries(intent, kind))
        if not intent.realtime:
            entries.extend(self._enrichment_entries(intent))
        logger.debug(
            "Constructed %d entries for %s via %s",
            len(entries), intent.contract, [k.value for k in kinds],
        )
        return QueryPlan(entries=tuple(entries), context=MappingProxyType(dict(intent.metadata)))

    def construct_entries(
        self,
        intent: QueryIntent,
        kind: SourceKind,
        required: bool = True,
        metric: str | None = None,
    ) -> list[PlanEntry]:
        """Build the entries reading one metric from one source kind.

        Raises:
            UnsupportedIntentError: No constructor for kind, or the metric is
                not available from it
        """
        builder = self._builders.get(kind)
        if builder is None:
            raise UnsupportedIntentError(f"No query constructor for source '{kind.value}'")
        definition = self.catalog.get(metric or intent.metric)
        payload = builder(intent, definition)
        contract = f"{definition.name}@{intent.dimension}"

        if definition.name != intent.metric:
            # Enrichment rows join on the dimension; other filters do not apply to them
            filters = tuple(f for f in intent.filters if f.field == intent.dimension)
            return [self._entry(kind, payload, required, contract, filters)]
        if not intent.series:
            return [self._entry(kind, payload, required, contract, intent.filters)]
        return [
            self._entry(kind, payload, required, contract, intent.filters + tuple(series_filters))
            for series_filters in intent.series
        ]

    def _entry(
        self,
        kind: SourceKind,
        payload: object,
        required: bool,
        contract: str,
        filters: tuple[Filter, ...],
    ) -> PlanEntry:
        return PlanEntry(
            source_kind=kind,
            payload=payload,
            required=required,
            timeout_ms=self.entry_timeout_ms,
            contract=contract,
            residual_filters=filters,
        )

    def _enrichment_entries(self, intent: QueryIntent) -> list[PlanEntry]:
        entries: list[PlanEntry] = []
        for name in self.catalog.get(intent.metric).enrichments:
            definition = self.catalog.get(name)
            if intent.dimension not in definition.dimensions:
                continue
            kind = SourceKind.API if definition.external else SourceKind.SQL
            if self.enabled_sources is not None and kind not in self.enabled_sources:
                logger.debug("Skipping enrichment %s: %s source not configured", name, kind.value)
                continue
            try:
                entries.extend(self.construct_entries(intent, kind, required=False, metric=name))
            except UnsupportedIntentError as e:
                logger.debug("Skipping enrichment %s: %s", name, e)
        return entries

    def _build_sql(self, intent: QueryIntent, definition: MetricDefinition) -> SqlPayload:
        if not definition.table or not definition.column:
            raise UnsupportedIntentError(f"Metric '{definition.name}' has no SQL table")
        return SqlPayload(
            table=definition.table,
            columns=(
                SelectItem(column=intent.dimension),
                SelectItem(
                    column=definition.column,
                    aggregation=definition.aggregation.value,
                    alias=definition.name,
                ),
            ),
            group_by=(intent.dimension,),
            order_by=(intent.dimension,),
        )

    def _build_api(self, intent: QueryIntent, definition: MetricDefinition) -> ApiPayload:
        if not definition.api_endpoint:
            raise UnsupportedIntentError(f"Metric '{definition.name}' has no API endpoint")
        path_params = {}
        if "{metric}" in definition.api_endpoint:
            path_params["metric"] = definition.name
        return ApiPayload(
            endpoint=definition.api_endpoint,
            path_params=MappingProxyType(path_params),
            query=MappingProxyType({"dimension": intent.dimension}),
        )

    def _build_stream(self, intent: QueryIntent, definition: MetricDefinition) -> StreamPayload:
        if not definition.stream_channel:
            raise UnsupportedIntentError(f"Metric '{definition.name}' has no stream channel")
        return StreamPayload(
            channel=definition.stream_channel,
            params=MappingProxyType({"dimension": intent.dimension}),
        )
