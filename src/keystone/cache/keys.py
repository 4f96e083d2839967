"""Cache key and dependency-tag derivation."""

import hashlib
from typing import Sequence

from keystone.models import QueryIntent, QueryPlan


def cache_key(
    intent: QueryIntent,
    policy_version: str,
    scope_keys: Sequence[str] = ("tenant_id",),
) -> str:
    """Deterministic key: sha256 of policy version + intent canonical form.

    Bumping the policy version orphans every existing entry without a scan.
    """
    canonical = intent.canonical_form(scope_keys)
    digest = hashlib.sha256(f"{policy_version}:{canonical}".encode("utf-8"))
    return digest.hexdigest()


def derive_tags(intent: QueryIntent, plan: QueryPlan | None = None) -> frozenset[str]:
    """Dependency tags for a result built from this intent and plan.

    Tags:
        metric:<name>, dimension:<name>, source:<kind> per entry,
        table:<name> per SQL table the plan read.
    """
    tags = {f"metric:{intent.metric}", f"dimension:{intent.dimension}"}
    if plan is not None:
        for entry in plan:
            tags.add(f"source:{entry.source_kind.value}")
            table = getattr(entry.payload, "table", None)
            if table:
                tags.add(f"table:{table}")
    return frozenset(tags)
