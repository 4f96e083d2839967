"""Parameterized query payloads, one type per source kind.

Identifiers and literal values are kept structurally apart: identifiers are
fields on the payload, values live in a params mapping and reach the backend
as bound parameters. Nothing is ever concatenated into a query string except
identifiers that passed the identifier pattern, and inline literals that the
SecurityValidator has checked.
"""

import re
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping

from keystone.models import FilterOp

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")

_AGGREGATIONS = {"avg", "sum", "count", "min", "max"}


def quote_identifier(name: str) -> str:
    """Quote a SQL identifier that matches the identifier pattern."""
    if not IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


@dataclass(frozen=True)
class SelectItem:
    """One projected column, optionally aggregated."""

    column: str
    aggregation: str | None = None
    alias: str | None = None

    def render(self) -> str:
        expr = quote_identifier(self.column)
        if self.aggregation:
            if self.aggregation not in _AGGREGATIONS:
                raise ValueError(f"Unsupported aggregation: {self.aggregation!r}")
            expr = f"{self.aggregation.upper()}({expr})"
        if self.alias:
            expr = f"{expr} AS {quote_identifier(self.alias)}"
        return expr


@dataclass(frozen=True)
class Predicate:
    """A WHERE condition; exactly one of param (bound) or literal (inline)."""

    field: str
    op: FilterOp
    param: str | None = None
    literal: str | None = None

    def __post_init__(self) -> None:
        if (self.param is None) == (self.literal is None):
            raise ValueError("Predicate needs exactly one of param or literal")


@dataclass(frozen=True)
class SqlPayload:
    """Read query against one table."""

    table: str
    columns: tuple[SelectItem, ...]
    group_by: tuple[str, ...] = ()
    predicates: tuple[Predicate, ...] = ()
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    order_by: tuple[str, ...] = ()
    limit: int | None = None
    operation: str = "select"

    def referenced_fields(self) -> set[str]:
        fields = {c.column for c in self.columns}
        fields.update(self.group_by)
        fields.update(p.field for p in self.predicates)
        fields.update(self.order_by)
        return fields

    def output_fields(self) -> set[str]:
        return {c.alias or c.column for c in self.columns}

    def with_predicate(self, predicate: Predicate, **params: Any) -> "SqlPayload":
        merged = dict(self.params)
        merged.update(params)
        return replace(
            self,
            predicates=self.predicates + (predicate,),
            params=MappingProxyType(merged),
        )

    def next_param_name(self, prefix: str = "p") -> str:
        n = len(self.params)
        while f"{prefix}{n}" in self.params:
            n += 1
        return f"{prefix}{n}"

    def render(self) -> tuple[str, dict[str, Any]]:
        """Render to SQL text with named placeholders and a params dict.

        'in' predicates with a bound tuple expand to one placeholder per value.
        """
        if self.operation != "select":
            raise ValueError(f"Only select payloads can be rendered, got {self.operation!r}")

        bound: dict[str, Any] = {}
        clauses = []
        for pred in self.predicates:
            column = quote_identifier(pred.field)
            if pred.literal is not None:
                rhs = pred.literal
            elif pred.op is FilterOp.IN:
                values = self.params[pred.param]
                names = []
                for i, value in enumerate(values):
                    name = f"{pred.param}_{i}"
                    bound[name] = value
                    names.append(f":{name}")
                rhs = f"({', '.join(names)})"
            else:
                bound[pred.param] = self.params[pred.param]
                rhs = f":{pred.param}"
            op = "IN" if pred.op is FilterOp.IN else pred.op.value
            clauses.append(f"{column} {op} {rhs}")

        sql = f"SELECT {', '.join(c.render() for c in self.columns)} FROM {quote_identifier(self.table)}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if self.group_by:
            sql += " GROUP BY " + ", ".join(quote_identifier(g) for g in self.group_by)
        if self.order_by:
            sql += " ORDER BY " + ", ".join(quote_identifier(o) for o in self.order_by)
        if self.limit is not None:
            sql += f" LIMIT {int(self.limit)}"
        return sql, bound


@dataclass(frozen=True)
class ApiPayload:
    """HTTP read against an endpoint template like '/benchmarks/{metric}'."""

    endpoint: str
    path_params: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    query: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    method: str = "GET"
    limit: int | None = None

    def path(self) -> str:
        return self.endpoint.format_map(dict(self.path_params))

    def request_params(self) -> dict[str, Any]:
        params = dict(self.query)
        if self.limit is not None:
            params["limit"] = self.limit
        return params

    def with_query(self, **query: Any) -> "ApiPayload":
        merged = dict(self.query)
        merged.update(query)
        return replace(self, query=MappingProxyType(merged))


@dataclass(frozen=True)
class StreamPayload:
    """Bounded snapshot of a streaming channel."""

    channel: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    max_events: int | None = None
    window_ms: int = 1_000
    operation: str = "snapshot"

    def with_params(self, **params: Any) -> "StreamPayload":
        merged = dict(self.params)
        merged.update(params)
        return replace(self, params=MappingProxyType(merged))
