"""Smoke test: audit a demo owner's links end-to-end against the real database."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sqlalchemy import select

from core.database import async_session_factory, dispose_engine
from core.models import TrackedLinkRow
from core.repository import SqlLinkRegistry
from workers.link_audit.factory import build_orchestrator
from workers.link_audit.orchestrator import AuditRequest

OWNER_ID = "smoke-test-creator"

DEMO_LINKS = [
    {
        "original_url": "https://www.amazon.com/dp/B08N5WRWNW?tag=smoketest-20",
        "retailer": "amazon",
        "product_name": "Wireless Headphones",
        "commission_rate": 4.0,
        "total_clicks": 1500,
    },
    {
        "original_url": "https://www.target.com/p/summer-dress/-/A-12345",
        "retailer": "target",
        "product_name": "Summer Dress",
        "commission_rate": 1.0,
        "total_clicks": 1000,
    },
    {
        "original_url": "https://example.invalid/this-link-is-broken",
        "retailer": None,
        "product_name": "Broken Demo Link",
        "total_clicks": 50,
    },
]


async def main():
    print("🚀 Starting Smoke Test: Link Audit Pipeline")

    async with async_session_factory() as session:
        result = await session.execute(select(TrackedLinkRow).where(TrackedLinkRow.owner_id == OWNER_ID))
        if not result.scalars().first():
            print("  ➕ Creating demo links...")
            for data in DEMO_LINKS:
                session.add(TrackedLinkRow(owner_id=OWNER_ID, **data))
            await session.commit()
        print(f"  ✅ Owner '{OWNER_ID}' set up")

    registry = SqlLinkRegistry(async_session_factory)
    orchestrator = build_orchestrator(registry)

    print("\n🔍 Running audit...")
    outcome = await orchestrator.run(AuditRequest(owner_id=OWNER_ID, force=True))

    print(f"\n🏁 Finished: {outcome.run.status if outcome.run else 'no run'} — {outcome.summary.to_dict()}")
    if outcome.snapshot:
        print(f"  📊 Health score: {outcome.snapshot.score} ({outcome.snapshot.trend})")
    for issue in await registry.list_issues(OWNER_ID):
        print(f"  ⚠️  [{issue.severity}] link {issue.link_id}: {issue.title}")
    for rec in outcome.recommendations:
        print(f"  💡 {rec.title}")

    await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
