"""Database connection factory.

Provides singleton async connection to SQLite (default) with WAL mode.
Backend selection via GHACTIVITY_DB_BACKEND env var.
"""
from __future__ import annotations

import json
import logging
from typing import Union, Any

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from ghactivity import config

logger = logging.getLogger("ghactivity.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None


async def _init_pg_connection(conn: Any) -> None:
    # JSONB columns round-trip as Python objects.
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        if not asyncpg:
            raise ImportError("asyncpg is required for Postgres backend.")

        logger.info("Connecting to PostgreSQL")
        _connection = await asyncpg.create_pool(
            config.DATABASE_URL,
            command_timeout=config.DB_TIMEOUT_SECONDS,
            init=_init_pg_connection,
        )
        return _connection

    config.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(config.DB_PATH))
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute(f"PRAGMA busy_timeout={int(config.DB_TIMEOUT_SECONDS * 1000)}")
    logger.info(f"Database connection established: {config.DB_PATH}")
    _connection = conn
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
