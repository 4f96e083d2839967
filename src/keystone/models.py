"""Core data model for KEYSTONE.

QueryIntent is the only way a request enters the engine. The upstream JSON is
validated with Pydantic at the boundary and frozen into a strict, closed
intent variant (chart / table / kpi) before any component sees it.

Everything else is a plain dataclass that lives for one request, except the
cache value produced by AggregatedData.to_cache_value(), which outlives it.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from keystone.errors import InvalidIntentError


class WidgetKind(Enum):
    """Closed set of widget variants an intent can ask for."""

    CHART = "chart"
    TABLE = "table"
    KPI = "kpi"


class SourceKind(Enum):
    """Backend families the engine can route to."""

    SQL = "sql"
    API = "api"
    STREAM = "stream"
    CACHE = "cache"


class FilterOp(Enum):
    """Comparison operators an intent filter may use."""

    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    IN = "in"


# Upstream resolvers sometimes send the chart type instead of the widget kind
_CHART_TYPES = {"bar", "line", "area", "pie", "scatter", "heatmap"}

_SCALAR_TYPES = (str, int, float, bool, type(None))

# Metadata that changes the rows a request returns (table page size)
SHAPING_METADATA_KEYS = ("page_size",)


def _json_key(value: Any) -> str:
    """Deterministic JSON text used for ordering and hashing."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class Filter:
    """One (field, op, value) predicate from the intent."""

    field: str
    op: FilterOp
    value: Any

    def sort_key(self) -> tuple[str, str, str]:
        return (self.field, self.op.value, _json_key(self.canonical_value()))

    def canonical_value(self) -> Any:
        if self.op is FilterOp.IN:
            return sorted(self.value, key=_json_key)
        return self.value

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op.value, "value": self.canonical_value()}


class _FilterModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1)
    op: FilterOp = FilterOp.EQ
    value: Any = None

    @model_validator(mode="after")
    def check_value(self) -> "_FilterModel":
        if self.op is FilterOp.IN:
            if not isinstance(self.value, (list, tuple)) or not self.value:
                raise ValueError(f"filter '{self.field}': 'in' needs a non-empty list")
            if not all(isinstance(v, _SCALAR_TYPES) for v in self.value):
                raise ValueError(f"filter '{self.field}': 'in' values must be scalars")
        elif not isinstance(self.value, _SCALAR_TYPES):
            raise ValueError(f"filter '{self.field}': value must be a scalar")
        return self

    def to_filter(self) -> Filter:
        value = tuple(self.value) if self.op is FilterOp.IN else self.value
        return Filter(field=self.field, op=self.op, value=value)


def _normalise_filters(raw: Any) -> Any:
    """Accept {field: value}, [[field, op, value]] or [{field, op, value}]."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [{"field": k, "op": "=", "value": v} for k, v in raw.items()]
    if isinstance(raw, list):
        normalised = []
        for item in raw:
            if isinstance(item, (list, tuple)) and len(item) == 3:
                normalised.append({"field": item[0], "op": item[1], "value": item[2]})
            else:
                normalised.append(item)
        return normalised
    return raw


class IntentPayload(BaseModel):
    """Upstream intent JSON: {chart, metric, dimension, filters, metadata}."""

    model_config = ConfigDict(extra="ignore")

    kind: WidgetKind = Field(validation_alias=AliasChoices("chart", "kind"))
    metric: str = Field(min_length=1)
    dimension: str = Field(min_length=1)
    filters: list[_FilterModel] = Field(default_factory=list)
    series: list[list[_FilterModel]] = Field(default_factory=list)
    realtime: bool | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("kind", mode="before")
    @classmethod
    def map_chart_type(cls, v: Any) -> Any:
        if isinstance(v, str) and v.lower() in _CHART_TYPES:
            return WidgetKind.CHART
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("metric", "dimension", mode="before")
    @classmethod
    def strip_names(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("filters", mode="before")
    @classmethod
    def normalise_filters(cls, v: Any) -> Any:
        return _normalise_filters(v)

    @field_validator("series", mode="before")
    @classmethod
    def normalise_series(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [_normalise_filters(s) for s in v]
        return v

    @model_validator(mode="after")
    def check_series(self) -> "IntentPayload":
        if self.series and self.kind is not WidgetKind.CHART:
            raise ValueError("series are only valid for chart intents")
        for series in self.series:
            if not series:
                raise ValueError("each series needs at least one filter")
            for f in series:
                if f.field != self.dimension:
                    raise ValueError(
                        f"series filters must be on the dimension '{self.dimension}', got '{f.field}'"
                    )
        return self


@dataclass(frozen=True)
class QueryIntent:
    """Strict, immutable data-retrieval intent."""

    kind: WidgetKind
    metric: str
    dimension: str
    filters: tuple[Filter, ...] = ()
    realtime: bool = False
    series: tuple[tuple[Filter, ...], ...] = ()
    metadata: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "QueryIntent":
        """Validate upstream JSON into a QueryIntent.

        Raises:
            InvalidIntentError: If the payload is malformed
        """
        if not isinstance(payload, Mapping):
            raise InvalidIntentError(f"Intent must be a JSON object, got {type(payload).__name__}")
        try:
            model = IntentPayload.model_validate(dict(payload))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'intent'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidIntentError(f"Malformed intent: {problems}") from e

        realtime = model.realtime
        if realtime is None:
            realtime = bool(model.metadata.get("realtime", False))

        return cls(
            kind=model.kind,
            metric=model.metric,
            dimension=model.dimension,
            filters=tuple(f.to_filter() for f in model.filters),
            realtime=realtime,
            series=tuple(tuple(f.to_filter() for f in s) for s in model.series),
            metadata=MappingProxyType(dict(model.metadata)),
        )

    def canonical_form(self, scope_keys: Sequence[str] = ("tenant_id",)) -> str:
        """Deterministic serialization; equal logical intents serialize identically.

        Filters (and each series) are sorted, so filter order never changes the
        form. Only the metadata keys that partition data (scope_keys) or shape
        the returned rows (SHAPING_METADATA_KEYS) take part.
        """
        body = {
            "kind": self.kind.value,
            "metric": self.metric,
            "dimension": self.dimension,
            "filters": [f.to_dict() for f in sorted(self.filters, key=Filter.sort_key)],
            "series": sorted(
                ([f.to_dict() for f in sorted(s, key=Filter.sort_key)] for s in self.series),
                key=_json_key,
            ),
            "realtime": self.realtime,
            "scope": {k: self.metadata[k] for k in sorted(scope_keys) if k in self.metadata},
            "shape": {k: self.metadata[k] for k in SHAPING_METADATA_KEYS if k in self.metadata},
        }
        return _json_key(body)

    @property
    def contract(self) -> str:
        """Logical metric/dimension contract the result rows satisfy."""
        return f"{self.metric}@{self.dimension}"


@dataclass(frozen=True)
class CachePolicy:
    """How long results may be served, fresh and stale."""

    ttl_seconds: int
    stale_if_error_seconds: int = 0
    cacheable: bool = True
    version: str = "v1"

    def __post_init__(self) -> None:
        if self.cacheable and self.ttl_seconds <= 0:
            raise ValueError("cacheable policy requires ttl_seconds > 0")


@dataclass(frozen=True)
class QueryStrategy:
    """Ordered source candidates and cache policy for one intent."""

    primary_sources: tuple[SourceKind, ...]
    fallback_sources: tuple[SourceKind, ...]
    cache_policy: CachePolicy
    optimization_hints: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )

    @property
    def stale_fallback_allowed(self) -> bool:
        return self.cache_policy.stale_if_error_seconds > 0


@dataclass(frozen=True)
class PlanEntry:
    """One query against one backend.

    The payload is opaque to the engine core; it is built by QueryConstructor
    and only interpreted by the optimizer, the validator and the adapter.
    """

    source_kind: SourceKind
    payload: Any
    required: bool = True
    timeout_ms: int = 5_000
    contract: str = ""
    residual_filters: tuple[Filter, ...] = ()


@dataclass(frozen=True)
class QueryPlan:
    """Ordered, flat list of plan entries plus the principal context."""

    entries: tuple[PlanEntry, ...]
    context: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False, hash=False
    )

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> PlanEntry:
        return self.entries[index]

    def with_entries(self, entries: Sequence[PlanEntry]) -> "QueryPlan":
        return QueryPlan(entries=tuple(entries), context=self.context)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one PlanEntry execution: rows XOR error, never both."""

    index: int
    source_kind: SourceKind
    rows: list[dict[str, Any]] | None = None
    timing_ms: float | None = None
    error_kind: str | None = None
    detail: str | None = None
    attempt: int = 1

    def __post_init__(self) -> None:
        has_rows = self.rows is not None
        has_error = self.error_kind is not None
        if has_rows == has_error:
            raise ValueError("ExecutionResult needs exactly one of rows or error_kind")
        if has_rows and self.timing_ms is None:
            raise ValueError("successful ExecutionResult needs timing_ms")

    @property
    def ok(self) -> bool:
        return self.rows is not None

    @classmethod
    def success(
        cls,
        index: int,
        source_kind: SourceKind,
        rows: list[dict[str, Any]],
        timing_ms: float,
        attempt: int = 1,
    ) -> "ExecutionResult":
        return cls(index=index, source_kind=source_kind, rows=rows, timing_ms=timing_ms, attempt=attempt)

    @classmethod
    def failure(
        cls,
        index: int,
        source_kind: SourceKind,
        error_kind: str,
        detail: str,
        attempt: int = 1,
    ) -> "ExecutionResult":
        return cls(
            index=index, source_kind=source_kind, error_kind=error_kind, detail=detail, attempt=attempt
        )


@dataclass
class AggregatedData:
    """Canonical, widget-ready record set."""

    records: list[dict[str, Any]]
    schema: dict[str, str]
    degraded: bool = False
    sources_used: set[str] = field(default_factory=set)
    data_source: str = "live"
    cached_at: float | None = None
    warnings: list[str] = field(default_factory=list)

    def to_cache_value(self) -> dict[str, Any]:
        """Serialize for CacheStore (JSON-compatible)."""
        return {
            "records": self.records,
            "schema": self.schema,
            "sources_used": sorted(self.sources_used),
        }

    @classmethod
    def from_cache_value(
        cls,
        value: Mapping[str, Any],
        data_source: str = "cache",
        cached_at: float | None = None,
        degraded: bool = False,
    ) -> "AggregatedData":
        return cls(
            records=[dict(r) for r in value.get("records", [])],
            schema=dict(value.get("schema", {})),
            degraded=degraded,
            sources_used=set(value.get("sources_used", [])),
            data_source=data_source,
            cached_at=cached_at,
        )


@dataclass(frozen=True)
class PerformanceSample:
    """One timed stage of one request. Appended, never mutated."""

    stage: str
    duration_ms: float
    outcome: str
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "duration_ms": round(self.duration_ms, 3),
            "outcome": self.outcome,
            "attempt": self.attempt,
        }
