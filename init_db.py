"""Initialize database tables"""
import asyncio

from subsidy_crm.database import engine, init_models


async def init():
    await init_models()
    await engine.dispose()
    print("Database tables created successfully.")


if __name__ == "__main__":
    asyncio.run(init())
