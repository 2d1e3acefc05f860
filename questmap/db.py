from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession, async_sessionmaker,
                                    create_async_engine)

from . import config
from .logging import get_logger
from .models import Base

logger = get_logger(__name__)


def make_engine(url: str = config.DATABASE_URL) -> AsyncEngine:
    # Create async SQLAlchemy engine
    return create_async_engine(
        url,
        echo=False,  # True if you want to see SQL
        future=True,
    )


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Create async session factory
    return async_sessionmaker(
        bind,
        expire_on_commit=False,
    )


async def init_db(bind: AsyncEngine) -> None:
    """Create any missing tables. Run once at startup; safe to repeat."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Adventure schema ready")
