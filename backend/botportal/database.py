"""
Database configuration and session management.
Async SQLAlchemy engine for SQLite (aiosqlite) and PostgreSQL (asyncpg).

Version: 2.0.0 (Async-only, chat delivery schema)
"""
from sqlalchemy import text, inspect, event
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool, NullPool
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine
)
import logging
import os
import time
import asyncio
from typing import Optional, Dict, Any, List
from pathlib import Path

from .config import settings

logger = logging.getLogger(__name__)

# Create declarative base
Base = declarative_base()

REQUIRED_TABLES = ['chat_sessions', 'messages', 'bots', 'bot_access']

# Global engine and session factory
_async_engine: Optional[AsyncEngine] = None
_AsyncSessionLocal: Optional[async_sessionmaker] = None
_async_init_lock = asyncio.Lock()
_async_initialized = False


def _enable_sqlite_pragmas(dbapi_connection, connection_record):
    """Enable WAL mode and foreign keys for SQLite."""
    try:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        logger.debug("SQLite WAL mode and foreign keys enabled")
    except Exception as e:
        logger.warning(f"Failed to enable SQLite optimizations: {e}")


def to_async_url(database_url: str) -> str:
    """Map a plain database URL onto its async driver."""
    if database_url.startswith('sqlite:///'):
        return database_url.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)
    if database_url.startswith('postgresql://'):
        return database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return database_url


def build_async_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Build an async engine for the given URL.

    In-memory SQLite uses a StaticPool so every session sees the same database.
    """
    async_url = to_async_url(database_url)

    if async_url.startswith('sqlite'):
        db_path = database_url.replace('sqlite:///', '')
        in_memory = db_path in (':memory:', '')

        if not in_memory and not os.path.isabs(db_path):
            db_dir = os.path.dirname(db_path)
            if db_dir:
                Path(db_dir).mkdir(parents=True, exist_ok=True)

        engine = create_async_engine(
            async_url,
            connect_args={"check_same_thread": False, "timeout": 20},
            poolclass=StaticPool if in_memory else NullPool,
            echo=echo
        )
        if not in_memory:
            event.listen(engine.sync_engine, "connect", _enable_sqlite_pragmas)

        logger.info(f"Async SQLite database engine created: {db_path or ':memory:'}")
        return engine

    if async_url.startswith('postgresql'):
        engine = create_async_engine(
            async_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_pool_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=echo,
            connect_args={
                "server_settings": {
                    "application_name": settings.app_name,
                    "timezone": "UTC"
                },
                "timeout": 10
            }
        )
        logger.info(
            f"Async PostgreSQL database engine created "
            f"(pool_size={settings.database_pool_size})"
        )
        return engine

    logger.warning("Unrecognised database URL, creating generic async engine")
    return create_async_engine(async_url, pool_pre_ping=True, echo=echo)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the async session factory used by the SQL chat store."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False
    )


async def create_async_database_engine() -> None:
    """
    Create the asynchronous database engine.
    Async-safe with initialization lock.
    """
    global _async_engine, _AsyncSessionLocal, _async_initialized

    # Double-checked locking pattern (async)
    if _async_initialized and _async_engine is not None:
        return

    async with _async_init_lock:
        if _async_initialized and _async_engine is not None:
            return

        try:
            logger.info("Creating async database engine...")
            _async_engine = build_async_engine(settings.database_url, echo=settings.database_echo)
            _AsyncSessionLocal = build_session_factory(_async_engine)
            _async_initialized = True
            logger.info("✓ Async database engine created successfully")

        except Exception as e:
            logger.error(f"Failed to create async database engine: {e}", exc_info=True)
            _async_initialized = False
            raise


async def get_async_engine() -> AsyncEngine:
    """Get the async database engine, creating it if necessary."""
    if _async_engine is None:
        await create_async_database_engine()
    return _async_engine


async def get_session_factory() -> async_sessionmaker:
    """Get the async session factory, creating the engine if necessary."""
    if _AsyncSessionLocal is None:
        await create_async_database_engine()

    if _AsyncSessionLocal is None:
        raise RuntimeError("Async database not initialized")

    return _AsyncSessionLocal


async def create_tables(engine: AsyncEngine) -> List[str]:
    """Create all registered tables on the engine and return the table names."""
    # Import all models to register with Base
    from .models import session, message, bot  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        table_names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    return table_names


async def init_db() -> None:
    """
    Initialize database tables.
    Async-safe with proper locking.
    """
    global _async_initialized

    try:
        logger.info("Initializing database...")

        engine = await get_async_engine()
        if engine is None:
            raise RuntimeError("Failed to create database engine")

        if settings.database_is_postgresql:
            try:
                async with engine.begin() as conn:
                    await conn.execute(text("SET timezone = 'UTC'"))
                logger.info("✓ PostgreSQL timezone set to UTC")
            except OperationalError as e:
                logger.warning(f"PostgreSQL initialization warning: {e}")

        start_time = time.time()
        table_names = await create_tables(engine)
        creation_time = time.time() - start_time
        logger.info(f"✓ Database tables created in {creation_time:.2f}s")

        missing_tables = [table for table in REQUIRED_TABLES if table not in table_names]
        if missing_tables:
            raise RuntimeError(f"Failed to create required tables: {missing_tables}")

        logger.info(f"Database tables: {table_names}")
        logger.info("✓ Database initialization complete")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        _async_initialized = False
        raise


async def cleanup_db() -> None:
    """
    Cleanup async database connections.
    Async-safe with graceful shutdown.
    """
    global _async_engine, _AsyncSessionLocal, _async_initialized

    async with _async_init_lock:
        try:
            logger.info("Cleaning up database connections...")

            _AsyncSessionLocal = None

            if _async_engine:
                try:
                    await _async_engine.dispose()
                    logger.info("✓ Async database engine disposed")
                except Exception as e:
                    logger.error(f"Error disposing async engine: {e}")
                finally:
                    _async_engine = None

            _async_initialized = False
            logger.info("✓ Database cleanup complete")

        except Exception as e:
            logger.error(f"Database cleanup error: {e}")


async def check_db_connection(max_retries: int = 3, retry_delay: float = 1.0) -> bool:
    """
    Check async database connection with retry logic.

    Args:
        max_retries: Maximum retry attempts
        retry_delay: Delay between retries in seconds

    Returns:
        True if connection is healthy
    """
    if _async_engine is None:
        logger.error("Async database engine not initialized")
        return False

    for attempt in range(max_retries):
        try:
            async with _async_engine.connect() as connection:
                result = await connection.execute(text("SELECT 1"))
                row = result.fetchone()
                if row and row[0] == 1:
                    logger.debug("Async database connection check passed")
                    return True

        except (DisconnectionError, OperationalError) as e:
            logger.warning(
                f"Async database connection check failed "
                f"(attempt {attempt + 1}/{max_retries}): {e}"
            )
            if attempt < max_retries - 1:
                await asyncio.sleep(retry_delay)
                retry_delay *= 2
        except Exception as e:
            logger.error(f"Unexpected async database connection error: {e}")
            break

    logger.error("Async database connection check failed after all retries")
    return False


async def check_tables_exist() -> bool:
    """
    Check if required tables exist.

    Returns:
        True if all required tables exist
    """
    if _async_engine is None:
        logger.error("Database engine not initialized")
        return False

    try:
        async with _async_engine.connect() as conn:
            table_names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

        missing_tables = [table for table in REQUIRED_TABLES if table not in table_names]

        if missing_tables:
            logger.error(f"Missing tables: {missing_tables}")
            return False

        logger.debug(f"All required tables exist: {REQUIRED_TABLES}")
        return True

    except Exception as e:
        logger.error(f"Error checking tables: {e}")
        return False


def get_database_info() -> Dict[str, Any]:
    """
    Get database information for monitoring.

    Returns:
        Dictionary with database information
    """
    if _async_engine is None:
        return {"status": "not_initialized"}

    info = {
        "status": "connected",
        "url": settings.database_url.split('@')[-1] if '@' in settings.database_url else "sqlite",
        "type": "postgresql" if settings.database_is_postgresql else "sqlite",
        "initialized": _async_initialized
    }

    pool = _async_engine.pool
    if hasattr(pool, 'size'):
        try:
            info.update({
                "pool_size": pool.size(),
                "checked_in": pool.checkedin(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow()
            })
        except Exception as e:
            logger.debug(f"Pool statistics unavailable: {e}")

    return info
