import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def init_engine(database_url: str, pool_size: int = 5, max_overflow: int = 10) -> async_sessionmaker:
    """Create the async engine and session factory. Returns the session factory."""
    global engine, AsyncSessionLocal

    engine = create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )

    AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
    return AsyncSessionLocal


async def init_db():
    """Verify the database connection and create missing reconciliation tables"""
    if engine is None:
        raise RuntimeError("Database engine not initialised; call init_engine() first")

    # Registers the reconciliation tables on Base.metadata
    from database import reconciliation_models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Reconciliation tables ready: {sorted(Base.metadata.tables)}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def dispose_engine():
    if engine is not None:
        await engine.dispose()
