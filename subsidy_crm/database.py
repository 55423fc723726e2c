"""
Database engine, session factory and table bootstrap for the CRM
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from subsidy_crm.config import get_settings

settings = get_settings()


def _get_async_url(url: str) -> str:
    """Convert database URL to async variant"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://")
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return url


database_url = _get_async_url(settings.DATABASE_URL)
is_sqlite = database_url.startswith("sqlite")

engine_kwargs = {
    "echo": settings.DEBUG,
    "future": True,
}

# SQLite doesn't support pool_size
if not is_sqlite:
    engine_kwargs["pool_size"] = 20
    engine_kwargs["max_overflow"] = 10

engine = create_async_engine(database_url, **engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


def versioned_mapper_args(version_column) -> dict:
    """
    Mapper arguments for aggregate roots (projects, invoices).

    With STRICT_CONCURRENCY enabled, the column becomes SQLAlchemy's
    version counter and a concurrent writer fails with StaleDataError
    instead of silently overwriting the other request's changes.
    """
    if settings.STRICT_CONCURRENCY:
        return {"version_id_col": version_column}
    return {}


async def init_models(bind=None) -> None:
    """Create all tables that don't exist yet"""
    # Importing the package registers every model on Base.metadata
    import subsidy_crm.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
