"""
Seed the scheme catalog (categories and schemes). Safe to run repeatedly.

Usage:
    python scripts/seed_catalog.py
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from subsidy_crm.database import AsyncSessionLocal, engine, init_models
from subsidy_crm.services.catalog import seed_catalog


async def main():
    try:
        await init_models()
        async with AsyncSessionLocal() as session:
            categories, schemes = await seed_catalog(session)
            await session.commit()
    except Exception as e:
        print(f"Catalog seed failed: {e}")
        sys.exit(1)
    finally:
        await engine.dispose()

    print(f"Catalog seeded successfully. New categories: {categories}, new schemes: {schemes}")


if __name__ == "__main__":
    asyncio.run(main())
