# insurepay/persistence/base.py
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


async def init_models(engine: AsyncEngine) -> None:
    """Create any missing tables. No migrations: new columns need a manual ALTER."""
    # models must be imported so their tables are registered on Base.metadata
    from insurepay.persistence import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
