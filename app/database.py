"""
Mio Backend — Async Database Engine & Session Factory

Backs the SQL implementation of the document store.  Two connection
strategies are supported:

1. **Cloud Run (production)** – ``cloud-sql-python-connector`` with IAM
   authentication, used when ``CLOUD_SQL_USE_UNIX_SOCKET`` is *True* **and**
   ``CLOUD_SQL_INSTANCE_CONNECTION`` is set.

2. **Local development** – a plain ``asyncpg`` URL read from ``DATABASE_URL``.

The engine is built lazily on first use so that processes running with
``STORE_BACKEND=memory`` never open a connection pool.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Shared declarative base for the ORM tables."""
    pass


_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _build_cloud_sql_engine() -> AsyncEngine:
    """Create an engine that connects through the Cloud SQL Python Connector."""
    from google.cloud.sql.connector import Connector

    settings = get_settings()
    connector = Connector()

    async def _get_connection():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    engine = create_async_engine(
        "postgresql+asyncpg://",
        async_creator=_get_connection,
        echo=(settings.LOG_LEVEL == "DEBUG"),
        **_POOL_KWARGS,
    )
    logger.info(
        "Database engine created via Cloud SQL Connector (%s)",
        settings.CLOUD_SQL_INSTANCE_CONNECTION,
    )
    return engine


def _build_local_engine() -> AsyncEngine:
    """Create an engine from ``DATABASE_URL``.

    A plain ``postgresql://`` scheme is upgraded to the asyncpg dialect.
    """
    settings = get_settings()
    url = settings.DATABASE_URL
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(
        url,
        echo=(settings.LOG_LEVEL == "DEBUG"),
        **_POOL_KWARGS,
    )
    logger.info("Database engine created from DATABASE_URL (local / dev)")
    return engine


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Return the process-wide engine, building it on first call."""
    settings = get_settings()
    if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
        return _build_cloud_sql_engine()
    return _build_local_engine()


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )

