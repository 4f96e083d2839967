"""Metric catalog for KEYSTONE.

The catalog is the single source of truth for what an intent may ask for:
    - which metrics exist and which dimensions they can be broken down by
    - where each metric lives (SQL table/column, API endpoint, stream channel)
    - how volatile each metric is (drives cache TTL)
    - the allow-list of tables, columns, endpoints and channels
    - row-level filters mandated per table

A built-in catalog ships with the engine. Deployments replace it with a JSON
file (settings.catalog_path) validated by the same Pydantic models.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from keystone.errors import InvalidIntentError

logger = logging.getLogger(__name__)


class Volatility(Enum):
    """How quickly a metric's values change. Longer-lived → longer TTL."""

    HISTORICAL = "historical"
    DAILY = "daily"
    NEAR_REALTIME = "near_realtime"


class Aggregation(Enum):
    AVG = "avg"
    SUM = "sum"
    COUNT = "count"
    MIN = "min"
    MAX = "max"


class MetricDefinition(BaseModel):
    """Where one metric lives and how it may be queried."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    dimensions: list[str] = Field(min_length=1)
    volatility: Volatility = Volatility.DAILY
    table: str | None = None
    column: str | None = None
    aggregation: Aggregation = Aggregation.AVG
    external: bool = False
    api_endpoint: str | None = None
    api_filterable: list[str] = Field(default_factory=list)
    stream_channel: str | None = None
    enrichments: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_location(self) -> "MetricDefinition":
        if self.table and not self.column:
            raise ValueError(f"metric '{self.name}': table requires column")
        if self.external and not self.api_endpoint:
            raise ValueError(f"metric '{self.name}': external metrics need an api_endpoint")
        if not (self.table or self.api_endpoint or self.stream_channel):
            raise ValueError(f"metric '{self.name}' has no source")
        return self


class CatalogModel(BaseModel):
    """On-disk catalog format."""

    model_config = ConfigDict(extra="forbid")

    tables: dict[str, list[str]] = Field(default_factory=dict)
    metrics: list[MetricDefinition] = Field(default_factory=list)
    # table → {column: principal attribute in intent metadata}
    row_level_policies: dict[str, dict[str, str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_references(self) -> "CatalogModel":
        names = {m.name for m in self.metrics}
        for metric in self.metrics:
            if metric.table:
                columns = self.tables.get(metric.table)
                if columns is None:
                    raise ValueError(f"metric '{metric.name}' references unknown table '{metric.table}'")
                missing = [c for c in [metric.column, *metric.dimensions] if c not in columns]
                if missing:
                    raise ValueError(
                        f"metric '{metric.name}': columns {missing} not in table '{metric.table}'"
                    )
            for enrichment in metric.enrichments:
                if enrichment not in names:
                    raise ValueError(f"metric '{metric.name}' enriches with unknown metric '{enrichment}'")
        for table in self.row_level_policies:
            if table not in self.tables:
                raise ValueError(f"row-level policy for unknown table '{table}'")
        return self


class MetricCatalog:
    """Lookup and allow-list queries over a validated catalog."""

    def __init__(self, model: CatalogModel) -> None:
        self._model = model
        self._metrics = {m.name: m for m in model.metrics}
        self._tables = {t: frozenset(cols) for t, cols in model.tables.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricCatalog":
        try:
            return cls(CatalogModel.model_validate(data))
        except ValidationError as e:
            raise ValueError(f"Invalid metric catalog: {e}") from e

    @classmethod
    def from_file(cls, path: str | Path) -> "MetricCatalog":
        """Load a JSON catalog file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the catalog does not validate
        """
        path = Path(path)
        data = json.loads(path.read_text(encoding="utf-8"))
        catalog = cls.from_dict(data)
        logger.info("Loaded metric catalog from %s (%d metrics)", path, len(catalog))
        return catalog

    def __len__(self) -> int:
        return len(self._metrics)

    def __contains__(self, metric: str) -> bool:
        return metric in self._metrics

    def get(self, metric: str) -> MetricDefinition:
        """Return the metric definition.

        Raises:
            InvalidIntentError: If the metric is unknown
        """
        try:
            return self._metrics[metric]
        except KeyError:
            raise InvalidIntentError(f"Unknown metric '{metric}'") from None

    def resolve(self, metric: str, dimension: str) -> MetricDefinition:
        """Return the metric definition, checking the dimension is allowed."""
        definition = self.get(metric)
        if dimension not in definition.dimensions:
            raise InvalidIntentError(
                f"Dimension '{dimension}' is not available for metric '{metric}' "
                f"(allowed: {', '.join(definition.dimensions)})"
            )
        return definition

    def table_columns(self, table: str) -> frozenset[str]:
        return self._tables.get(table, frozenset())

    def is_allowed_table(self, table: str) -> bool:
        return table in self._tables

    @property
    def allowed_endpoints(self) -> frozenset[str]:
        return frozenset(m.api_endpoint for m in self._metrics.values() if m.api_endpoint)

    @property
    def allowed_channels(self) -> frozenset[str]:
        return frozenset(m.stream_channel for m in self._metrics.values() if m.stream_channel)

    def row_level_policy(self, table: str) -> dict[str, str]:
        return dict(self._model.row_level_policies.get(table, {}))

    @property
    def principal_attributes(self) -> tuple[str, ...]:
        """Intent metadata keys any row-level policy reads, sorted."""
        return tuple(sorted({a for policy in self._model.row_level_policies.values() for a in policy.values()}))


_TIME_GRAINS = ["week", "month", "quarter", "year"]

DEFAULT_CATALOG: dict[str, Any] = {
    "tables": {
        "employee_metrics": [
            "tenant_id", "employee_id", "department", "team", "location", "role",
            *_TIME_GRAINS,
            "burnout_risk_score", "engagement_score", "overtime_hours",
        ],
        "workforce": [
            "tenant_id", "department", "team", "location",
            *_TIME_GRAINS,
            "headcount", "attrition_rate",
        ],
    },
    "metrics": [
        {
            "name": "burnout_risk_score",
            "table": "employee_metrics",
            "column": "burnout_risk_score",
            "aggregation": "avg",
            "dimensions": ["department", "team", "location", "role", "week", "month"],
            "volatility": "daily",
        },
        {
            "name": "engagement_score",
            "table": "employee_metrics",
            "column": "engagement_score",
            "aggregation": "avg",
            "dimensions": ["department", "team", "location", "month", "quarter"],
            "volatility": "daily",
            "enrichments": ["survey_participation"],
        },
        {
            "name": "overtime_hours",
            "table": "employee_metrics",
            "column": "overtime_hours",
            "aggregation": "sum",
            "dimensions": ["department", "team", "week", "month"],
            "volatility": "daily",
            "api_endpoint": "/metrics/overtime_hours",
            "api_filterable": ["department", "team"],
        },
        {
            "name": "headcount",
            "table": "workforce",
            "column": "headcount",
            "aggregation": "sum",
            "dimensions": ["department", "team", "location", "month", "quarter", "year"],
            "volatility": "historical",
        },
        {
            "name": "attrition_rate",
            "table": "workforce",
            "column": "attrition_rate",
            "aggregation": "avg",
            "dimensions": ["department", "location", "quarter", "year"],
            "volatility": "historical",
        },
        {
            "name": "survey_participation",
            "external": True,
            "api_endpoint": "/surveys/participation",
            "api_filterable": ["department", "team"],
            "dimensions": ["department", "team", "location", "month", "quarter"],
            "volatility": "historical",
        },
        {
            "name": "industry_burnout_benchmark",
            "external": True,
            "api_endpoint": "/benchmarks/{metric}",
            "api_filterable": ["department", "region"],
            "dimensions": ["department", "region"],
            "volatility": "historical",
        },
        {
            "name": "active_sessions",
            "stream_channel": "sessions.active",
            "dimensions": ["department", "location", "minute"],
            "volatility": "near_realtime",
        },
    ],
    "row_level_policies": {},
}


def default_catalog() -> MetricCatalog:
    """Built-in catalog used when settings.catalog_path is unset."""
    return MetricCatalog.from_dict(DEFAULT_CATALOG)
