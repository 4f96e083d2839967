"""Example 1: Basic Query

This example shows the most basic usage of KEYSTONE:
answering one widget intent from a SQLite database, then answering it
again from the cache.

For demonstration purposes, this builds a small synthetic database.
In production, the engine is configured through settings (.env).
"""

import asyncio
import json
import sqlite3
import tempfile
from pathlib import Path

import numpy as np

from keystone.adapters import SqlSourceAdapter
from keystone.models import SourceKind
from keystone.pipeline import OrchestrationEngine


def generate_synthetic_database(path: Path, n_employees: int = 200) -> None:
    """Write a synthetic employee_metrics table.

    In production, this would be the HR analytics warehouse.
    """
    rng = np.random.default_rng(7)
    departments = ["Engineering", "Operations", "Sales", "Support"]

    conn = sqlite3.connect(path)
    conn.execute(
        "CREATE TABLE employee_metrics (tenant_id TEXT, employee_id INTEGER, department TEXT, "
        "team TEXT, location TEXT, role TEXT, week TEXT, month TEXT, quarter TEXT, year TEXT, "
        "burnout_risk_score REAL, engagement_score REAL, overtime_hours REAL)"
    )
    rows = [
        (
            "acme", i, departments[i % len(departments)], None, None, None, None, None, None, None,
            float(rng.uniform(0.1, 0.9)), float(rng.uniform(0.3, 1.0)), float(rng.gamma(2.0, 3.0)),
        )
        for i in range(n_employees)
    ]
    conn.executemany(f"INSERT INTO employee_metrics VALUES ({', '.join('?' * 13)})", rows)
    conn.commit()
    conn.close()


async def run(database: Path) -> None:
    intent = {"chart": "bar", "metric": "burnout_risk_score", "dimension": "department"}
    adapters = {SourceKind.SQL: SqlSourceAdapter(database)}

    async with OrchestrationEngine(adapters=adapters) as engine:
        # Step 2: Cold request goes to SQL
        print("Step 2: Answering intent (cold cache)...")
        first = await engine.handle(intent)
        strategy = first["query_info"]["cache_strategy"]
        print(f"  ✓ Status: {first['status']}, cache: {strategy['status']}, ttl: {strategy['ttl_seconds']}s")
        print(f"  ✓ SQL: {first['query_info']['executed_queries'][0]['query']['sql']}")
        for record in first["data"]["records"]:
            print(f"    {record['department']:<12} {record['burnout_risk_score']:.3f}")
        print()

        # Step 3: Same intent again is served from cache
        print("Step 3: Answering the same intent again...")
        second = await engine.handle(intent)
        print(f"  ✓ Cache: {second['query_info']['cache_strategy']['status']}")
        print(f"  ✓ Freshness: {json.dumps(second['data']['metadata']['freshness'])}")
        print()

        # Step 4: Invalidate by table tag
        print("Step 4: Invalidating table:employee_metrics...")
        affected = await engine.invalidate("table:employee_metrics")
        print(f"  ✓ {affected} cached result(s) invalidated")
        print()


def main():
    """Run basic query example."""
    print("=" * 60)
    print("KEYSTONE — Example 1: Basic Query")
    print("=" * 60)
    print()

    with tempfile.TemporaryDirectory() as tmp:
        database = Path(tmp) / "hr.db"

        # Step 1: Generate synthetic data
        print("Step 1: Generating synthetic database...")
        generate_synthetic_database(database)
        print("  ✓ Wrote 200 employees to employee_metrics")
        print()

        asyncio.run(run(database))

    print("=" * 60)
    print("Example complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
