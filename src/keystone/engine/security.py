"""Security Validator — whitelist and sanitize a plan before execution.

Checks per entry (first failure raises SecurityViolation):
    1. Read-only operation (SQL select, API GET/HEAD, stream snapshot)
    2. Tables, fields, endpoints and channels are in the catalog allow-list
       (residual filters included: a field the source cannot return is
       rejected rather than silently matching nothing)
    3. Inline literals carry no structural injection markers for the payload
       type; bound parameters are data and only need to be scalar values
    4. Row-level filters mandated by policy are present — injected when
       missing, rejected when contradicted

A violation is fatal: it is never retried and never falls back to another
source. The offending entry travels with the exception.
"""

import logging
import re
from dataclasses import replace
from typing import Any

from keystone.catalog import MetricCatalog
from keystone.engine.payloads import IDENTIFIER, ApiPayload, Predicate, SqlPayload, StreamPayload
from keystone.errors import SecurityViolation
from keystone.models import FilterOp, PlanEntry, QueryPlan

logger = logging.getLogger(__name__)

_READ_METHODS = {"GET", "HEAD"}
_STREAM_OPERATIONS = {"snapshot"}
_AGGREGATIONS = {"avg", "sum", "count", "min", "max"}

# Statement terminators, comment openers and quote breakouts
_SQL_INJECTION_MARKERS = re.compile(r";|--|/\*|\*/|\x00|\\")
_SQL_LITERAL = re.compile(
    r"^(?:-?\d+(?:\.\d+)?|'(?:[^']|'')*'|TRUE|FALSE|NULL)$",
    re.IGNORECASE,
)
_PATH_INJECTION_MARKERS = re.compile(r"/|\.\.|\?|#|%|[\x00-\x1f\x7f]")
_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_CHANNEL = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")

_SCALARS = (str, int, float, bool, type(None))


class SecurityValidator:
    """Validates every entry of a plan against the catalog allow-list.

    Args:
        catalog: Metric catalog (allow-list and row-level policies)
    """

    def __init__(self, catalog: MetricCatalog) -> None:
        self.catalog = catalog

    def validate(self, plan: QueryPlan) -> QueryPlan:
        """Return the validated plan (with row-level filters injected).

        Raises:
            SecurityViolation: On the first entry that fails a check
        """
        entries = []
        for index, entry in enumerate(plan):
            try:
                entries.append(self._validate_entry(entry, plan.context))
            except SecurityViolation as e:
                e.entry = entry
                e.detail.setdefault("index", index)
                e.detail.setdefault("source", entry.source_kind.value)
                logger.error("Security violation in plan entry %d: %s", index, e)
                raise
        return plan.with_entries(entries)

    def _validate_entry(self, entry: PlanEntry, context: Any) -> PlanEntry:
        payload = entry.payload
        if isinstance(payload, SqlPayload):
            payload = self._validate_sql(payload)
            payload = self._apply_row_level_policy(payload, context)
        elif isinstance(payload, ApiPayload):
            self._validate_api(payload)
        elif isinstance(payload, StreamPayload):
            self._validate_stream(payload)
        else:
            raise SecurityViolation(f"Unknown payload type {type(payload).__name__}")
        self._validate_residual_filters(entry)
        return replace(entry, payload=payload)

    def _validate_residual_filters(self, entry: PlanEntry) -> None:
        if not entry.residual_filters:
            return
        allowed = self._output_fields(entry)
        denied = sorted({f.field for f in entry.residual_filters if f.field not in allowed})
        if denied:
            raise SecurityViolation(
                f"Filter fields {denied} are not allow-listed for {entry.contract or entry.source_kind.value}",
                detail={"fields": denied},
            )

    def _output_fields(self, entry: PlanEntry) -> frozenset[str]:
        """Fields rows from this entry may carry."""
        if isinstance(entry.payload, SqlPayload):
            return self.catalog.table_columns(entry.payload.table)
        metric = entry.contract.split("@", 1)[0]
        if metric not in self.catalog:
            return frozenset()
        definition = self.catalog.get(metric)
        return frozenset([definition.name, *definition.dimensions, *definition.api_filterable])

    # --- SQL ---

    def _validate_sql(self, payload: SqlPayload) -> SqlPayload:
        if payload.operation != "select":
            raise SecurityViolation(f"Operation '{payload.operation}' is not read-only")
        if not self.catalog.is_allowed_table(payload.table):
            raise SecurityViolation(f"Table '{payload.table}' is not allow-listed")

        allowed = self.catalog.table_columns(payload.table)
        denied = sorted(f for f in payload.referenced_fields() if f not in allowed)
        if denied:
            raise SecurityViolation(
                f"Fields {denied} are not allow-listed for table '{payload.table}'",
                detail={"fields": denied},
            )
        for item in payload.columns:
            if item.aggregation is not None and item.aggregation not in _AGGREGATIONS:
                raise SecurityViolation(f"Aggregation '{item.aggregation}' is not allowed")
            if item.alias is not None and not IDENTIFIER.match(item.alias):
                raise SecurityViolation(f"Alias {item.alias!r} is not a valid identifier")
        if payload.limit is not None and (not isinstance(payload.limit, int) or payload.limit < 0):
            raise SecurityViolation(f"Invalid limit {payload.limit!r}")

        for pred in payload.predicates:
            if pred.literal is not None:
                _check_sql_literal(pred.literal)
            elif pred.param not in payload.params:
                raise SecurityViolation(f"Predicate on '{pred.field}' references unbound param '{pred.param}'")
        for name, value in payload.params.items():
            if not IDENTIFIER.match(name):
                raise SecurityViolation(f"Parameter name {name!r} is not a valid identifier")
            _check_bound_value(name, value)
        return payload

    def _apply_row_level_policy(self, payload: SqlPayload, context: Any) -> SqlPayload:
        for column, attribute in self.catalog.row_level_policy(payload.table).items():
            value = context.get(attribute) if context is not None else None
            if value is None:
                raise SecurityViolation(
                    f"Row-level policy on '{payload.table}' needs principal attribute '{attribute}'"
                )
            existing = [p for p in payload.predicates if p.field == column]
            if not existing:
                name = f"rls_{column}"
                payload = payload.with_predicate(
                    Predicate(field=column, op=FilterOp.EQ, param=name), **{name: value}
                )
                logger.debug("Injected row-level filter %s on %s", column, payload.table)
                continue
            for pred in existing:
                bound = payload.params.get(pred.param) if pred.param is not None else None
                if pred.op is not FilterOp.EQ or pred.literal is not None or bound != value:
                    raise SecurityViolation(
                        f"Filter on '{column}' conflicts with the row-level policy for '{payload.table}'"
                    )
        return payload

    # --- API ---

    def _validate_api(self, payload: ApiPayload) -> None:
        if payload.method.upper() not in _READ_METHODS:
            raise SecurityViolation(f"HTTP method '{payload.method}' is not read-only")
        if payload.endpoint not in self.catalog.allowed_endpoints:
            raise SecurityViolation(f"Endpoint '{payload.endpoint}' is not allow-listed")

        placeholders = set(_PLACEHOLDER.findall(payload.endpoint))
        if placeholders != set(payload.path_params):
            raise SecurityViolation(
                f"Path params {sorted(payload.path_params)} do not match endpoint placeholders "
                f"{sorted(placeholders)}"
            )
        for name, value in payload.path_params.items():
            if not isinstance(value, str) or not value or _PATH_INJECTION_MARKERS.search(value):
                raise SecurityViolation(f"Path param '{name}' contains structural characters: {value!r}")
        for name, value in payload.query.items():
            if not IDENTIFIER.match(name):
                raise SecurityViolation(f"Query parameter name {name!r} is not a valid identifier")
            _check_bound_value(name, value)

    # --- Stream ---

    def _validate_stream(self, payload: StreamPayload) -> None:
        if payload.operation not in _STREAM_OPERATIONS:
            raise SecurityViolation(f"Stream operation '{payload.operation}' is not read-only")
        if not _CHANNEL.match(payload.channel):
            raise SecurityViolation(f"Channel name {payload.channel!r} is malformed")
        if payload.channel not in self.catalog.allowed_channels:
            raise SecurityViolation(f"Channel '{payload.channel}' is not allow-listed")
        for name, value in payload.params.items():
            if not IDENTIFIER.match(name):
                raise SecurityViolation(f"Subscription parameter name {name!r} is not a valid identifier")
            _check_bound_value(name, value)


def _check_sql_literal(literal: str) -> None:
    if _SQL_INJECTION_MARKERS.search(literal):
        raise SecurityViolation(
            f"Inline literal contains SQL structural markers: {literal!r}",
            detail={"literal": literal},
        )
    if not _SQL_LITERAL.match(literal.strip()):
        raise SecurityViolation(f"Inline literal is not a plain SQL constant: {literal!r}")


def _check_bound_value(name: str, value: Any) -> None:
    if isinstance(value, (tuple, list)):
        if not value or not all(isinstance(v, _SCALARS) for v in value):
            raise SecurityViolation(f"Parameter '{name}' must be a non-empty list of scalars")
        return
    if not isinstance(value, _SCALARS):
        raise SecurityViolation(f"Parameter '{name}' has unsupported type {type(value).__name__}")
