"""Query Optimizer — pure QueryPlan → QueryPlan rewrites.

Rewrites (applied in this order):
    1. Predicate pushdown: residual intent filters move into the payload where
       the backend can evaluate them (SQL columns of the table, filterable API
       fields, stream subscription params). The rest stay residual and are
       applied in-process by the ResultAggregator.
    2. Merge: SQL entries with the same shape that differ only by disjoint
       equality / 'in' predicates on the intent dimension collapse into one
       entry with an 'in' predicate (one round trip instead of N).
    3. Limit injection: kpi → 1, table → page size, chart → series cap, only
       where the payload has no limit yet and nothing is left residual (the
       source would cut the page before the in-process filter runs).

Never changes an entry's required flag or timeout.
"""

import logging
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Hashable

from keystone.catalog import MetricCatalog
from keystone.engine.payloads import ApiPayload, Predicate, SqlPayload, StreamPayload
from keystone.models import Filter, FilterOp, PlanEntry, QueryIntent, QueryPlan, WidgetKind

logger = logging.getLogger(__name__)


class QueryOptimizer:
    """Performance rewrites over a constructed plan.

    Args:
        catalog: Metric catalog (table columns, API filterable fields)
        table_page_size: Default limit for table widgets
        chart_series_cap: Default limit for chart widgets
    """

    def __init__(
        self,
        catalog: MetricCatalog,
        table_page_size: int = 100,
        chart_series_cap: int = 500,
    ) -> None:
        self.catalog = catalog
        self.table_page_size = table_page_size
        self.chart_series_cap = chart_series_cap

    def optimize(self, plan: QueryPlan, intent: QueryIntent) -> QueryPlan:
        return self.rewrite(plan, intent)[0]

    def rewrite(self, plan: QueryPlan, intent: QueryIntent) -> tuple[QueryPlan, list[str]]:
        """Optimize a plan and report which rewrites applied.

        Returns:
            (optimized plan, list of applied rewrite labels)
        """
        applied: list[str] = []

        entries = []
        pushed = 0
        for entry in plan:
            new_entry = self._push_down(entry)
            pushed += len(entry.residual_filters) - len(new_entry.residual_filters)
            entries.append(new_entry)
        if pushed:
            applied.append(f"predicate_pushdown:{pushed}")

        before = len(entries)
        entries = self._merge(entries, intent.dimension)
        if len(entries) < before:
            applied.append(f"merged_entries:{before}->{len(entries)}")

        limit = self.limit_for(intent)
        limited = 0
        for i, entry in enumerate(entries):
            new_entry = self._with_limit(entry, limit)
            if new_entry is not entry:
                entries[i] = new_entry
                limited += 1
        if limited:
            applied.append(f"limit:{limit}")

        if applied:
            logger.debug("Optimized plan for %s: %s", intent.contract, ", ".join(applied))
        return plan.with_entries(entries), applied

    def limit_for(self, intent: QueryIntent) -> int:
        if intent.kind is WidgetKind.KPI:
            return 1
        if intent.kind is WidgetKind.TABLE:
            page_size = intent.metadata.get("page_size")
            if isinstance(page_size, int) and not isinstance(page_size, bool) and page_size > 0:
                return page_size
            return self.table_page_size
        return self.chart_series_cap

    # --- Pushdown ---

    def _push_down(self, entry: PlanEntry) -> PlanEntry:
        if not entry.residual_filters:
            return entry
        payload = entry.payload
        residual: list[Filter] = []

        if isinstance(payload, SqlPayload):
            columns = self.catalog.table_columns(payload.table)
            for f in entry.residual_filters:
                if f.field in columns:
                    name = payload.next_param_name()
                    payload = payload.with_predicate(
                        Predicate(field=f.field, op=f.op, param=name), **{name: f.value}
                    )
                else:
                    residual.append(f)

        elif isinstance(payload, ApiPayload):
            metric = entry.contract.split("@", 1)[0]
            filterable = set(self.catalog.get(metric).api_filterable) if metric in self.catalog else set()
            for f in entry.residual_filters:
                if f.op is FilterOp.EQ and f.field in filterable and f.field not in payload.query:
                    payload = payload.with_query(**{f.field: f.value})
                else:
                    residual.append(f)

        elif isinstance(payload, StreamPayload):
            for f in entry.residual_filters:
                if f.op is FilterOp.EQ and f.field not in payload.params:
                    payload = payload.with_params(**{f.field: f.value})
                else:
                    residual.append(f)

        else:
            return entry

        return replace(entry, payload=payload, residual_filters=tuple(residual))

    # --- Merge ---

    def _merge(self, entries: list[PlanEntry], dimension: str) -> list[PlanEntry]:
        merged: list[PlanEntry] = []
        shape_index: dict[Hashable, int] = {}
        values_at: dict[int, list[Any]] = {}

        for entry in entries:
            split = _split_dimension_predicate(entry, dimension)
            if split is None:
                merged.append(entry)
                continue
            shape, values = split
            index = shape_index.get(shape)
            if index is not None and not set(values_at[index]) & set(values):
                values_at[index].extend(values)
                merged[index] = _with_dimension_values(merged[index], dimension, values_at[index])
                continue
            shape_index[shape] = len(merged)
            values_at[len(merged)] = list(values)
            merged.append(entry)

        return merged

    # --- Limits ---

    def _with_limit(self, entry: PlanEntry, limit: int) -> PlanEntry:
        if entry.residual_filters:
            return entry
        payload = entry.payload
        if isinstance(payload, (SqlPayload, ApiPayload)) and payload.limit is None:
            return replace(entry, payload=replace(payload, limit=limit))
        if isinstance(payload, StreamPayload) and payload.max_events is None:
            return replace(entry, payload=replace(payload, max_events=limit))
        return entry


def _split_dimension_predicate(entry: PlanEntry, dimension: str) -> tuple[Hashable, tuple[Any, ...]] | None:
    """Return (shape key, dimension values) for a mergeable SQL entry."""
    payload = entry.payload
    if not isinstance(payload, SqlPayload):
        return None
    dim_predicates = [p for p in payload.predicates if p.field == dimension]
    if len(dim_predicates) != 1:
        return None
    pred = dim_predicates[0]
    if pred.param is None or pred.op not in (FilterOp.EQ, FilterOp.IN):
        return None
    raw = payload.params[pred.param]
    values = tuple(raw) if pred.op is FilterOp.IN else (raw,)

    others = []
    for p in payload.predicates:
        if p is pred:
            continue
        value = payload.params[p.param] if p.param is not None else None
        others.append((p.field, p.op.value, p.literal, value))
    shape = (
        entry.source_kind,
        entry.required,
        entry.timeout_ms,
        entry.contract,
        entry.residual_filters,
        payload.operation,
        payload.table,
        payload.columns,
        payload.group_by,
        payload.order_by,
        payload.limit,
        tuple(others),
    )
    return shape, values


def _with_dimension_values(entry: PlanEntry, dimension: str, values: list[Any]) -> PlanEntry:
    payload: SqlPayload = entry.payload
    old = next(p for p in payload.predicates if p.field == dimension)
    params = {k: v for k, v in payload.params.items() if k != old.param}
    predicates = tuple(p for p in payload.predicates if p is not old)
    name = old.param
    new_pred = Predicate(field=dimension, op=FilterOp.IN, param=name)
    params[name] = tuple(values)
    new_payload = replace(payload, predicates=predicates + (new_pred,), params=MappingProxyType(params))
    return replace(entry, payload=new_payload)
