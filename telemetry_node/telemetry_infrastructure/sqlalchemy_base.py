"""
SQLAlchemy 2.0 async base and session management for the telemetry sync node
"""
import asyncio
import logging
import socket
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote_plus

from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from ..config import Config

logger = logging.getLogger(__name__)

# Create declarative base
Base = declarative_base()

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker] = None
_initialized = False

# Raised while PostgreSQL is still starting or unreachable
DB_STARTUP_ERRORS = (OSError, asyncio.TimeoutError, OperationalError, InterfaceError)


def build_database_url() -> str:
    """SQLAlchemy async URL (postgresql+asyncpg://) from the database config section"""
    db_config = Config.get_database_config()
    password = db_config.get('password') or ''
    return (
        f"postgresql+asyncpg://{db_config.get('username', 'postgres')}:{quote_plus(password)}"
        f"@{db_config.get('host', 'localhost')}:{db_config.get('port', 5432)}"
        f"/{db_config.get('database', 'telemetry')}"
    )


async def _create_engine() -> AsyncEngine:
    """Create a new SQLAlchemy async engine"""
    db_config = Config.get_database_config()
    engine = create_async_engine(
        build_database_url(),
        echo=False,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=10,
        pool_recycle=1800,
        pool_timeout=30,
        connect_args={
            "command_timeout": 30,
            "server_settings": {
                "application_name": "telemetry_sync_node",
            }
        }
    )
    logger.info(f"SQLAlchemy async engine created: {db_config.get('host')}:{db_config.get('port')}/{db_config.get('database')}")
    return engine


async def wait_for_database(
    connect: Callable[[], Awaitable[Any]],
    shutdown_event: Optional[asyncio.Event] = None,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
) -> Any:
    """
    Call connect until the database accepts a connection.

    The wait doubles after every failure up to max_delay. Setting
    shutdown_event ends the wait with CancelledError.
    """
    attempt = 0
    delay = initial_delay
    while True:
        try:
            return await connect()
        except asyncio.CancelledError:
            raise
        except DB_STARTUP_ERRORS as e:
            attempt += 1
            reason = str(e)
            if isinstance(e, socket.gaierror):
                reason = "host name not resolvable"
            elif "Connection refused" in reason:
                reason = "connection refused"
            log = logger.info if attempt <= 3 else logger.warning
            log(f"Database not reachable (attempt {attempt}): {reason}. Retrying in {delay:.1f}s")

        if shutdown_event is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            else:
                raise asyncio.CancelledError("Shutdown requested while waiting for the database")
        delay = min(delay * 2, max_delay)


async def init_sqlalchemy(retry: bool = True, shutdown_event: Optional[asyncio.Event] = None):
    """
    Initialize SQLAlchemy async engine and session factory.
    With retry=True, will retry indefinitely until connection succeeds.

    Args:
        retry: If True, retry connection indefinitely with exponential backoff
        shutdown_event: Aborts the retry loop when set
    """
    global _engine, _async_session_maker, _initialized

    if _initialized:
        return

    async def _init():
        global _engine, _async_session_maker, _initialized

        engine = await _create_engine()
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except BaseException:
            await engine.dispose()
            raise

        _engine = engine
        _async_session_maker = async_sessionmaker(
            _engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        logger.info("SQLAlchemy async engine initialized and connection verified")
        _initialized = True

    if retry:
        await wait_for_database(_init, shutdown_event=shutdown_event)
    else:
        await _init()


async def create_tables():
    """Create all tables registered with Base.metadata"""
    # Register models with Base.metadata
    from . import db_models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
    logger.info("Database tables verified/created via ORM")


def get_session() -> AsyncSession:
    """
    Get async database session context manager.

    Raises:
        RuntimeError: If SQLAlchemy not initialized
    """
    if not _initialized:
        raise RuntimeError("SQLAlchemy not initialized. Call init_sqlalchemy() first.")
    return _async_session_maker()


def get_engine() -> AsyncEngine:
    """Get async database engine"""
    if not _initialized:
        raise RuntimeError("SQLAlchemy not initialized. Call init_sqlalchemy() first.")
    return _engine


async def close_sqlalchemy():
    """Close SQLAlchemy engine"""
    global _engine, _async_session_maker, _initialized
    if _engine:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        _initialized = False
        logger.info("SQLAlchemy engine closed")


async def health_check() -> dict:
    """
    Check database connection health.

    Returns:
        dict with 'healthy' (bool), 'latency_ms' (float), and 'error' (str or None)
    """
    if not _initialized:
        return {'healthy': False, 'latency_ms': 0, 'error': 'Not initialized'}

    start = time.time()
    try:
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency = (time.time() - start) * 1000
        return {'healthy': True, 'latency_ms': latency, 'error': None}
    except Exception as e:
        latency = (time.time() - start) * 1000
        return {'healthy': False, 'latency_ms': latency, 'error': str(e)}
