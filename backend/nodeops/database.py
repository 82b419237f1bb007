"""Database initialization and ORM setup."""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm import DeclarativeBase
import logging

from nodeops.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,  # Disable SQL echo to prevent logging
    pool_pre_ping=True,
)

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def configure_engine(database_url: str) -> None:
    """Point the module-level engine and session factory at another database."""
    global engine, AsyncSessionLocal

    engine = create_async_engine(database_url, echo=False, pool_pre_ping=True)
    AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """Dependency for getting async database session."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db():
    """Initialize database tables."""
    db_type = engine.url.get_backend_name()
    logger.info(f"Initializing database: {db_type}")

    try:
        # Import models to register with Base
        import nodeops.models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database tables initialized successfully ({db_type})")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
