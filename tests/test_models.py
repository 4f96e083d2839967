"""Tests for the core data model."""

import pytest

from keystone.errors import InvalidIntentError
from keystone.models import (
    AggregatedData,
    CachePolicy,
    ExecutionResult,
    Filter,
    FilterOp,
    PlanEntry,
    QueryIntent,
    QueryPlan,
    SourceKind,
    WidgetKind,
)


class TestIntentValidation:
    """Upstream JSON is validated and frozen at the boundary."""

    def test_minimal_payload(self):
        intent = QueryIntent.from_payload({"chart": "bar", "metric": "headcount", "dimension": "department"})

        assert intent.kind is WidgetKind.CHART
        assert intent.metric == "headcount"
        assert intent.filters == ()
        assert intent.realtime is False
        assert intent.contract == "headcount@department"

    @pytest.mark.parametrize("raw,expected", [
        ("line", WidgetKind.CHART),
        ("PIE", WidgetKind.CHART),
        ("table", WidgetKind.TABLE),
        ("KPI", WidgetKind.KPI),
    ])
    def test_widget_kind_mapping(self, raw, expected):
        intent = QueryIntent.from_payload({"chart": raw, "metric": "headcount", "dimension": "team"})
        assert intent.kind is expected

    def test_kind_alias(self):
        intent = QueryIntent.from_payload({"kind": "table", "metric": "headcount", "dimension": "team"})
        assert intent.kind is WidgetKind.TABLE

    def test_names_are_stripped(self):
        intent = QueryIntent.from_payload({"chart": "kpi", "metric": " headcount ", "dimension": "team "})
        assert intent.contract == "headcount@team"

    @pytest.mark.parametrize("filters", [
        {"location": "Berlin"},
        [["location", "=", "Berlin"]],
        [{"field": "location", "op": "=", "value": "Berlin"}],
        [{"field": "location", "value": "Berlin"}],
    ])
    def test_filter_forms(self, filters):
        intent = QueryIntent.from_payload(
            {"chart": "bar", "metric": "headcount", "dimension": "department", "filters": filters}
        )
        assert intent.filters == (Filter("location", FilterOp.EQ, "Berlin"),)

    def test_in_filter_frozen_to_tuple(self):
        intent = QueryIntent.from_payload({
            "chart": "bar", "metric": "headcount", "dimension": "department",
            "filters": [["location", "in", ["Berlin", "Paris"]]],
        })
        assert intent.filters[0].value == ("Berlin", "Paris")

    def test_realtime_from_metadata(self):
        intent = QueryIntent.from_payload({
            "chart": "kpi", "metric": "active_sessions", "dimension": "department",
            "metadata": {"realtime": True},
        })
        assert intent.realtime is True

    def test_metadata_is_read_only(self):
        intent = QueryIntent.from_payload({
            "chart": "kpi", "metric": "headcount", "dimension": "team", "metadata": {"tenant_id": "acme"},
        })
        with pytest.raises(TypeError):
            intent.metadata["tenant_id"] = "globex"

    @pytest.mark.parametrize("payload,message", [
        ({"chart": "bar", "metric": "headcount"}, "dimension"),
        ({"chart": "gauge", "metric": "headcount", "dimension": "team"}, "chart"),
        ({"chart": "bar", "metric": "", "dimension": "team"}, "metric"),
        (
            {"chart": "bar", "metric": "headcount", "dimension": "team", "filters": [["team", "in", []]]},
            "non-empty list",
        ),
        (
            {"chart": "bar", "metric": "headcount", "dimension": "team", "filters": {"team": {"$ne": 1}}},
            "scalar",
        ),
        (
            {"chart": "bar", "metric": "headcount", "dimension": "team", "filters": [["team", "~", "x"]]},
            "op",
        ),
    ])
    def test_malformed_payloads(self, payload, message):
        with pytest.raises(InvalidIntentError, match=message):
            QueryIntent.from_payload(payload)

    def test_non_object_payload(self):
        with pytest.raises(InvalidIntentError, match="JSON object"):
            QueryIntent.from_payload(["headcount"])

    def test_series_only_on_charts(self):
        with pytest.raises(InvalidIntentError, match="series"):
            QueryIntent.from_payload({
                "chart": "table", "metric": "headcount", "dimension": "team",
                "series": [[["team", "=", "core"]]],
            })

    def test_series_must_filter_on_dimension(self):
        with pytest.raises(InvalidIntentError, match="dimension"):
            QueryIntent.from_payload({
                "chart": "bar", "metric": "headcount", "dimension": "team",
                "series": [[["location", "=", "Berlin"]]],
            })


class TestCanonicalForm:
    BASE = {"chart": "bar", "metric": "headcount", "dimension": "department"}

    def test_filter_order_irrelevant(self):
        a = QueryIntent.from_payload(dict(self.BASE, filters=[["team", "=", "a"], ["location", "=", "b"]]))
        b = QueryIntent.from_payload(dict(self.BASE, filters=[["location", "=", "b"], ["team", "=", "a"]]))
        assert a.canonical_form() == b.canonical_form()

    def test_in_value_order_irrelevant(self):
        a = QueryIntent.from_payload(dict(self.BASE, filters=[["team", "in", ["a", "b"]]]))
        b = QueryIntent.from_payload(dict(self.BASE, filters=[["team", "in", ["b", "a"]]]))
        assert a.canonical_form() == b.canonical_form()

    def test_only_scope_metadata_counts(self):
        a = QueryIntent.from_payload(dict(self.BASE, metadata={"tenant_id": "acme", "trace": "1"}))
        b = QueryIntent.from_payload(dict(self.BASE, metadata={"tenant_id": "acme", "trace": "2"}))
        c = QueryIntent.from_payload(dict(self.BASE, metadata={"tenant_id": "globex"}))

        assert a.canonical_form() == b.canonical_form()
        assert a.canonical_form() != c.canonical_form()


class TestValueObjects:
    def test_cacheable_policy_needs_ttl(self):
        with pytest.raises(ValueError, match="ttl_seconds"):
            CachePolicy(ttl_seconds=0)
        assert CachePolicy(ttl_seconds=0, cacheable=False).cacheable is False

    def test_execution_result_is_rows_xor_error(self):
        with pytest.raises(ValueError):
            ExecutionResult(index=0, source_kind=SourceKind.SQL)
        with pytest.raises(ValueError):
            ExecutionResult(index=0, source_kind=SourceKind.SQL, rows=[], timing_ms=1.0, error_kind="SourceTimeout")
        with pytest.raises(ValueError, match="timing_ms"):
            ExecutionResult(index=0, source_kind=SourceKind.SQL, rows=[])

        assert ExecutionResult.success(0, SourceKind.SQL, [], timing_ms=1.0).ok
        assert not ExecutionResult.failure(0, SourceKind.SQL, "SourceTimeout", "slow").ok

    def test_plan_with_entries_keeps_context(self):
        first = PlanEntry(source_kind=SourceKind.SQL, payload=None)
        second = PlanEntry(source_kind=SourceKind.API, payload=None)
        plan = QueryPlan(entries=(first,), context={"tenant_id": "acme"})

        replaced = plan.with_entries([second])

        assert replaced[0] is second
        assert replaced.context == {"tenant_id": "acme"}
        assert plan[0] is first

    def test_cache_value_restores_records(self):
        data = AggregatedData(
            records=[{"department": "Eng", "headcount": 52}],
            schema={"department": "string", "headcount": "integer"},
            sources_used={"sql", "api"},
            warnings=["not cached"],
        )

        restored = AggregatedData.from_cache_value(data.to_cache_value(), cached_at=10.0)

        assert restored.records == data.records
        assert restored.sources_used == {"sql", "api"}
        assert restored.data_source == "cache"
        assert restored.cached_at == 10.0
        assert restored.warnings == []
