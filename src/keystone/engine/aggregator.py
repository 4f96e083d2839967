"""Result Aggregator — ExecutionResults → widget-ready AggregatedData.

Steps:
    1. Apply each entry's residual filters to its rows (filters the payload
       could not absorb)
    2. Concatenate rows of the entries sharing the primary contract, in plan
       order, and deduplicate by primary key (last write wins)
    3. Left-merge enrichment contracts onto the primary rows by key
    4. Infer a schema from the union of entry row shapes

Frames are built with dtype=object so source values keep their Python types;
pandas only does the concat / dedupe / merge bookkeeping.
"""

import logging
import math
from datetime import date, datetime
from typing import Any, Sequence

import numpy as np
import pandas as pd

from keystone.errors import SchemaConflictError
from keystone.models import AggregatedData, ExecutionResult, Filter, FilterOp, QueryPlan

logger = logging.getLogger(__name__)

PRIMARY_KEY_COLUMN = "primary_key"

# pandas inferred dtype → schema type
_SCHEMA_TYPES = {
    "integer": "integer",
    "floating": "number",
    "mixed-integer-float": "number",
    "decimal": "number",
    "string": "string",
    "boolean": "boolean",
    "datetime": "datetime",
    "datetime64": "datetime",
    "date": "datetime",
}


class ResultAggregator:
    """Merges per-entry rows into one record set."""

    def aggregate(self, plan: QueryPlan, results: Sequence[ExecutionResult]) -> AggregatedData:
        """Merge successful results of a plan.

        Args:
            plan: The executed plan (declaration order drives merge order)
            results: Latest result per entry; entries with no result were skipped

        Returns:
            AggregatedData with degraded=True if an optional entry failed or
            was skipped

        Raises:
            SchemaConflictError: If two entries disagree on a field's type
        """
        by_index = {r.index: r for r in results}
        if not len(plan):
            return AggregatedData(records=[], schema={})

        primary_contract = next((e.contract for e in plan if e.required), plan[0].contract)
        dimension = primary_contract.split("@", 1)[-1]

        schema: dict[str, str] = {}
        frames: dict[str, list[pd.DataFrame]] = {}
        sources_used: set[str] = set()
        warnings: list[str] = []
        degraded = False

        for index, entry in enumerate(plan):
            result = by_index.get(index)
            if result is None or not result.ok:
                if not entry.required:
                    degraded = True
                    reason = result.error_kind if result is not None else "skipped"
                    warnings.append(f"Optional source for {entry.contract} unavailable ({reason})")
                continue

            frame = pd.DataFrame(result.rows, dtype=object)
            frame = _apply_filters(frame, entry.residual_filters)
            _merge_schema(schema, _infer_schema(frame), entry.contract)
            frames.setdefault(entry.contract, []).append(frame)
            sources_used.add(entry.source_kind.value)

        primary = _concat(frames.pop(primary_contract, []))
        key = PRIMARY_KEY_COLUMN if PRIMARY_KEY_COLUMN in primary.columns else dimension
        if key in primary.columns:
            primary = primary.drop_duplicates(subset=[key], keep="last")

        for contract, parts in frames.items():
            enrichment = _concat(parts)
            if key not in enrichment.columns or key not in primary.columns:
                warnings.append(f"Enrichment {contract} has no '{key}' column; not merged")
                continue
            enrichment = enrichment.drop_duplicates(subset=[key], keep="last")
            extra = [c for c in enrichment.columns if c == key or c not in primary.columns]
            primary = primary.merge(enrichment[extra], on=key, how="left")

        records = [
            {column: _to_native(value) for column, value in row.items()}
            for row in primary.to_dict("records")
        ]
        schema = {column: schema[column] for column in primary.columns if column in schema}
        logger.debug(
            "Aggregated %d records for %s from %s (degraded=%s)",
            len(records), primary_contract, sorted(sources_used), degraded,
        )
        return AggregatedData(
            records=records,
            schema=schema,
            degraded=degraded,
            sources_used=sources_used,
            warnings=warnings,
        )


def _concat(parts: list[pd.DataFrame]) -> pd.DataFrame:
    parts = [p for p in parts if not p.empty]
    if not parts:
        return pd.DataFrame(dtype=object)
    if len(parts) == 1:
        return parts[0].reset_index(drop=True)
    return pd.concat(parts, ignore_index=True)


def _apply_filters(frame: pd.DataFrame, filters: tuple[Filter, ...]) -> pd.DataFrame:
    for f in filters:
        if frame.empty:
            break
        if f.field not in frame.columns:
            # A row that does not carry the field cannot satisfy the predicate
            return frame.iloc[0:0]
        mask = frame[f.field].map(lambda v, f=f: _matches(v, f)).astype(bool)
        frame = frame[mask]
    return frame


def _matches(value: Any, f: Filter) -> bool:
    if _is_missing(value):
        return False
    try:
        if f.op is FilterOp.EQ:
            return value == f.value
        if f.op is FilterOp.NE:
            return value != f.value
        if f.op is FilterOp.IN:
            return value in f.value
        if f.op is FilterOp.GT:
            return value > f.value
        if f.op is FilterOp.GTE:
            return value >= f.value
        if f.op is FilterOp.LT:
            return value < f.value
        if f.op is FilterOp.LTE:
            return value <= f.value
    except TypeError:
        return False
    return False


def _infer_schema(frame: pd.DataFrame) -> dict[str, str]:
    schema = {}
    for column in frame.columns:
        values = frame[column].dropna()
        if values.empty:
            continue
        inferred = pd.api.types.infer_dtype(values, skipna=True)
        field_type = _SCHEMA_TYPES.get(inferred)
        if field_type is None:
            raise SchemaConflictError(
                f"Field '{column}' has mixed value types ({inferred})",
                detail={"field": column, "inferred": inferred},
            )
        schema[str(column)] = field_type
    return schema


def _merge_schema(schema: dict[str, str], incoming: dict[str, str], contract: str) -> None:
    for column, field_type in incoming.items():
        current = schema.get(column)
        if current is None or current == field_type:
            schema[column] = field_type
        elif {current, field_type} == {"integer", "number"}:
            schema[column] = "number"
        else:
            raise SchemaConflictError(
                f"Field '{column}' is {current} in one entry and {field_type} in {contract}",
                detail={"field": column, "types": sorted({current, field_type})},
            )


def _is_missing(value: Any) -> bool:
    if value is None or value is pd.NaT:
        return True
    return isinstance(value, float) and math.isnan(value)


def _to_native(value: Any) -> Any:
    """JSON-friendly Python value for one cell."""
    if _is_missing(value):
        return None
    if isinstance(value, np.generic):
        value = value.item()
        return None if _is_missing(value) else value
    if isinstance(value, (pd.Timestamp, datetime, date)):
        return value.isoformat()
    return value
