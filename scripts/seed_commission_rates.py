"""
Seed script — loads the default commission rate table.
Run once after the first migration:

    PYTHONPATH=src python scripts/seed_commission_rates.py

Rows already present (same retailer + category) are left alone unless
``--overwrite`` is passed, so manually tuned rates survive a re-seed.
"""

from __future__ import annotations

import asyncio
import sys

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from core.config import settings
from core.models import CommissionRateRow
from workers.link_audit.commission_optimizer import DEFAULT_COMMISSION_RATES


async def seed(overwrite: bool = False) -> None:
    engine = create_async_engine(settings.database_url)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        for retailer, by_category in DEFAULT_COMMISSION_RATES.items():
            for category, rate in by_category.items():
                existing = (await session.execute(
                    select(CommissionRateRow).where(
                        CommissionRateRow.retailer == retailer,
                        CommissionRateRow.category == category,
                    )
                )).scalar_one_or_none()

                if existing is not None:
                    if not overwrite:
                        print(f"  ⚠️  {retailer}/{category} already exists ({existing.rate}%) — skipping.")
                        continue
                    existing.rate = rate
                    existing.source = "default"
                    print(f"  🔁 {retailer}/{category} reset to {rate}%")
                    continue

                session.add(CommissionRateRow(retailer=retailer, category=category, rate=rate, source="default"))
                print(f"  ✅ {retailer}/{category} — {rate}%")

        await session.commit()
        print("\n🎉 Seed completed.")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(seed(overwrite="--overwrite" in sys.argv))
