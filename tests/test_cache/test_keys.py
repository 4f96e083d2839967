"""Tests for cache key and dependency-tag derivation."""

from keystone.cache import cache_key, derive_tags
from keystone.engine.payloads import SelectItem, SqlPayload
from keystone.models import PlanEntry, QueryIntent, QueryPlan, SourceKind


def intent(**overrides) -> QueryIntent:
    payload = {"chart": "bar", "metric": "headcount", "dimension": "department"}
    payload.update(overrides)
    return QueryIntent.from_payload(payload)


class TestCacheKey:
    def test_deterministic(self):
        assert cache_key(intent(), "v1") == cache_key(intent(), "v1")
        assert len(cache_key(intent(), "v1")) == 64

    def test_filter_order_does_not_matter(self):
        a = intent(filters=[["location", "=", "Berlin"], ["team", "in", ["b", "a"]]])
        b = intent(filters=[["team", "in", ["a", "b"]], ["location", "=", "Berlin"]])

        assert cache_key(a, "v1") == cache_key(b, "v1")

    def test_filter_dict_form_matches_list_form(self):
        a = intent(filters={"location": "Berlin"})
        b = intent(filters=[{"field": "location", "op": "=", "value": "Berlin"}])

        assert cache_key(a, "v1") == cache_key(b, "v1")

    def test_different_filters_different_keys(self):
        assert cache_key(intent(filters={"location": "Berlin"}), "v1") != cache_key(
            intent(filters={"location": "Paris"}), "v1"
        )

    def test_policy_version_changes_key(self):
        assert cache_key(intent(), "v1") != cache_key(intent(), "v2")

    def test_scope_metadata_partitions_key(self):
        """Tenants never share entries; unrelated metadata does not matter."""
        acme = intent(metadata={"tenant_id": "acme", "trace_id": "1"})
        acme_again = intent(metadata={"tenant_id": "acme", "trace_id": "2"})
        globex = intent(metadata={"tenant_id": "globex"})

        assert cache_key(acme, "v1") == cache_key(acme_again, "v1")
        assert cache_key(acme, "v1") != cache_key(globex, "v1")

    def test_realtime_flag_is_part_of_key(self):
        assert cache_key(intent(), "v1") != cache_key(intent(realtime=True), "v1")


class TestDeriveTags:
    def test_intent_only(self):
        assert derive_tags(intent()) == {"metric:headcount", "dimension:department"}

    def test_plan_adds_source_and_table(self):
        plan = QueryPlan(entries=(
            PlanEntry(
                source_kind=SourceKind.SQL,
                payload=SqlPayload(table="workforce", columns=(SelectItem(column="department"),)),
            ),
        ))

        tags = derive_tags(intent(), plan)

        assert "source:sql" in tags
        assert "table:workforce" in tags
