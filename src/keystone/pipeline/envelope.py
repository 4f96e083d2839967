"""Response envelopes.

Success:
    {agent_id, timestamp, status: "success",
     data: {records, schema, metadata: {degraded, data_source, sources_used,
            record_count, freshness, warnings}},
     query_info: {executed_queries, optimization_applied, cache_strategy},
     performance}

Error:
    {agent_id, timestamp, status: "error",
     error: {error_type, error_code, message, recovery_action, user_message},
     fallback_data}

Degraded data is always labelled: data_source and freshness tell the widget
whether it is looking at live, cached or stale values.
"""

from datetime import datetime, timezone
from typing import Any

from keystone.engine.payloads import ApiPayload, SqlPayload, StreamPayload
from keystone.errors import KeystoneError
from keystone.models import AggregatedData

_FRESHNESS = {
    "live": "fresh",
    "cache": "cached",
    "cached_fallback": "stale",
    "stale": "stale",
}


def _timestamp(now: float | None = None) -> str:
    if now is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(now, tz=timezone.utc).isoformat()


def freshness(data: AggregatedData, now: float) -> dict[str, Any]:
    """Freshness marker for a result set."""
    marker: dict[str, Any] = {"status": _FRESHNESS.get(data.data_source, "unknown")}
    if data.cached_at is not None:
        marker["cached_at"] = _timestamp(data.cached_at)
        marker["age_seconds"] = round(max(now - data.cached_at, 0.0), 3)
    return marker


def data_block(data: AggregatedData, now: float) -> dict[str, Any]:
    return {
        "records": [dict(r) for r in data.records],
        "schema": dict(data.schema),
        "metadata": {
            "degraded": data.degraded,
            "data_source": data.data_source,
            "sources_used": sorted(data.sources_used),
            "record_count": len(data.records),
            "freshness": freshness(data, now),
            "warnings": list(data.warnings),
        },
    }


def describe_payload(payload: Any) -> dict[str, Any]:
    """Loggable description of a plan entry payload (values stay bound)."""
    if isinstance(payload, SqlPayload):
        sql, params = payload.render()
        return {"sql": sql, "params": params}
    if isinstance(payload, ApiPayload):
        return {"method": payload.method, "path": payload.path(), "params": payload.request_params()}
    if isinstance(payload, StreamPayload):
        return {
            "channel": payload.channel,
            "params": dict(payload.params),
            "max_events": payload.max_events,
            "window_ms": payload.window_ms,
        }
    return {"payload": repr(payload)}


def success_envelope(
    agent_id: str,
    data: AggregatedData,
    query_info: dict[str, Any],
    performance: dict[str, Any],
    now: float,
) -> dict[str, Any]:
    return {
        "agent_id": agent_id,
        "timestamp": _timestamp(),
        "status": "success",
        "data": data_block(data, now),
        "query_info": query_info,
        "performance": performance,
    }


def error_envelope(
    agent_id: str,
    error: KeystoneError,
    fallback_data: AggregatedData | None = None,
    now: float | None = None,
) -> dict[str, Any]:
    """Build the error envelope.

    Args:
        agent_id: Engine identifier
        error: Classified error (last error when recovery was exhausted)
        fallback_data: Retained stale result to show behind the error, if any
        now: Cache clock time used for the fallback freshness marker
    """
    fallback = None
    if fallback_data is not None:
        fallback = data_block(fallback_data, now if now is not None else datetime.now(timezone.utc).timestamp())
    return {
        "agent_id": agent_id,
        "timestamp": _timestamp(),
        "status": "error",
        "error": error.to_dict(),
        "fallback_data": fallback,
    }
