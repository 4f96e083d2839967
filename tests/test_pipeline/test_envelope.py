"""Tests for response envelopes."""

from types import MappingProxyType

from keystone.engine import ApiPayload, Predicate, SelectItem, SqlPayload, StreamPayload
from keystone.errors import SecurityViolation, SourceUnavailable
from keystone.models import AggregatedData, FilterOp
from keystone.pipeline.envelope import describe_payload, error_envelope, freshness, success_envelope


def data(**overrides) -> AggregatedData:
    values = dict(
        records=[{"department": "Eng", "headcount": 52}],
        schema={"department": "string", "headcount": "integer"},
        sources_used={"sql"},
    )
    values.update(overrides)
    return AggregatedData(**values)


class TestFreshness:
    def test_live(self):
        assert freshness(data(), now=100.0) == {"status": "fresh"}

    def test_cached_has_age(self):
        marker = freshness(data(data_source="cache", cached_at=1_000.0), now=1_030.0)

        assert marker["status"] == "cached"
        assert marker["age_seconds"] == 30.0
        assert marker["cached_at"].startswith("1970-01-01T00:16:40")

    def test_stale_fallback(self):
        marker = freshness(data(data_source="cached_fallback", cached_at=1_000.0), now=2_200.0)
        assert marker["status"] == "stale"


class TestSuccessEnvelope:
    def test_shape(self):
        query_info = {"executed_queries": [], "optimization_applied": [], "cache_strategy": {"status": "miss"}}

        envelope = success_envelope("keystone", data(warnings=["w"]), query_info, {"total_ms": 1.0}, now=0.0)

        assert envelope["status"] == "success"
        assert envelope["agent_id"] == "keystone"
        assert envelope["query_info"] is query_info
        assert envelope["data"]["records"] == [{"department": "Eng", "headcount": 52}]
        metadata = envelope["data"]["metadata"]
        assert metadata["record_count"] == 1
        assert metadata["sources_used"] == ["sql"]
        assert metadata["degraded"] is False
        assert metadata["warnings"] == ["w"]
        assert metadata["freshness"] == {"status": "fresh"}

    def test_records_are_copied(self):
        result = data()
        envelope = success_envelope("keystone", result, {}, {}, now=0.0)

        envelope["data"]["records"][0]["headcount"] = 0

        assert result.records[0]["headcount"] == 52


class TestErrorEnvelope:
    def test_without_fallback(self):
        envelope = error_envelope("keystone", SecurityViolation("Field 'salary' is not allow-listed"))

        assert envelope["status"] == "error"
        assert envelope["fallback_data"] is None
        assert envelope["error"]["error_type"] == "security_violation"
        assert envelope["error"]["recovery_action"] == "none"
        assert "user_message" in envelope["error"]

    def test_with_stale_fallback(self):
        stale = data(data_source="stale", cached_at=1_000.0, degraded=True)

        envelope = error_envelope("keystone", SourceUnavailable("down"), fallback_data=stale, now=4_000.0)

        fallback = envelope["fallback_data"]
        assert fallback["metadata"]["data_source"] == "stale"
        assert fallback["metadata"]["freshness"]["status"] == "stale"
        assert fallback["metadata"]["freshness"]["age_seconds"] == 3_000.0


class TestDescribePayload:
    def test_sql_keeps_values_bound(self):
        payload = SqlPayload(
            table="workforce",
            columns=(SelectItem(column="department"),),
            predicates=(Predicate(field="location", op=FilterOp.EQ, param="p0"),),
            params=MappingProxyType({"p0": "Berlin"}),
        )

        described = describe_payload(payload)

        assert "Berlin" not in described["sql"]
        assert described["params"] == {"p0": "Berlin"}

    def test_api(self):
        payload = ApiPayload(
            endpoint="/benchmarks/{metric}",
            path_params=MappingProxyType({"metric": "burnout"}),
            limit=10,
        )

        assert describe_payload(payload) == {
            "method": "GET",
            "path": "/benchmarks/burnout",
            "params": {"limit": 10},
        }

    def test_stream(self):
        described = describe_payload(StreamPayload(channel="sessions.active", max_events=1))
        assert described["channel"] == "sessions.active"
        assert described["max_events"] == 1

    def test_unknown(self):
        assert describe_payload(None) == {"payload": "None"}
