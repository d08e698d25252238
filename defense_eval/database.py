"""
defense_eval/database.py
Database engine, session factory and schema bootstrap
"""
import logging

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from defense_eval.config.settings import settings
from defense_eval.orm.base import Base
import defense_eval.orm  # ensures all models are registered

logger = logging.getLogger(__name__)


def _enable_sqlite_write_serialization(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction start with BEGIN IMMEDIATE.

    The driver's own deferred BEGIN lets two readers both upgrade to
    writers and fail with "database is locked"; taking the write lock at
    BEGIN makes concurrent submissions queue on the busy timeout instead.
    """
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str = None, **overrides) -> AsyncEngine:
    """Create an async engine with pool settings suited to the dialect."""
    database_url = database_url or settings.DATABASE_URL

    if "sqlite" in database_url.lower():
        options = dict(
            echo=settings.DB_ECHO,
            pool_pre_ping=True,
            connect_args={
                "timeout": settings.SQLITE_BUSY_TIMEOUT,  # busy timeout in seconds
            },
        )
        options.update(overrides)
        engine = create_async_engine(database_url, **options)
        _enable_sqlite_write_serialization(engine)
        return engine

    # PostgreSQL: READ COMMITTED is enough, row locks order the cascade
    options = dict(
        echo=settings.DB_ECHO,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=3600,
        isolation_level="READ COMMITTED",
    )
    options.update(overrides)
    return create_async_engine(database_url, **options)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


async def get_db():
    """Dependency for getting async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: AsyncEngine = None):
    """Create all tables that do not exist yet."""
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def close_db():
    await engine.dispose()
