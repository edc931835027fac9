"""
Database helpers — connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  ``init_database`` only
creates what is missing (``IF NOT EXISTS``); it is not a migration tool.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS pages (
        id                      TEXT PRIMARY KEY,
        name                    TEXT NOT NULL,
        encrypted_access_token  TEXT,
        updated_at              TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ig_assets (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        page_id     TEXT NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id               TEXT PRIMARY KEY,
        platform         TEXT NOT NULL,
        page_id          TEXT NOT NULL,
        ig_business_id   TEXT,
        updated_time     TIMESTAMPTZ NOT NULL,
        started_time     TIMESTAMPTZ,
        last_message_at  TIMESTAMPTZ,
        customer_count   INTEGER NOT NULL,
        business_count   INTEGER NOT NULL,
        price_given      BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id               TEXT PRIMARY KEY,
        conversation_id  TEXT NOT NULL,
        page_id          TEXT NOT NULL,
        sender_type      TEXT NOT NULL,
        body             TEXT,
        created_time     TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_states (
        id              BIGSERIAL PRIMARY KEY,
        page_id         TEXT NOT NULL,
        platform        TEXT NOT NULL,
        last_synced_at  TIMESTAMPTZ,
        updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id         BIGSERIAL PRIMARY KEY,
        timestamp  TIMESTAMPTZ DEFAULT NOW(),
        service    TEXT NOT NULL,
        action     TEXT NOT NULL,
        details    JSONB,
        success    BOOLEAN NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversations_page_idx ON conversations (page_id)",
    "CREATE INDEX IF NOT EXISTS messages_conversation_idx ON messages (conversation_id)",
    "CREATE INDEX IF NOT EXISTS sync_states_page_platform_idx ON sync_states (page_id, platform)",
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host", "localhost"),
        port=int(config.get("port", 5432)),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=int(config.get("min_size", 1)),
        max_size=int(config.get("max_size", 5)),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host", "localhost"),
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent.

    Tables:
        - ``pages``: connected pages with encrypted access tokens.
        - ``ig_assets``: Instagram business accounts linked to pages.
        - ``conversations``: one row per upstream conversation.
        - ``messages``: write-once upstream messages.
        - ``sync_states``: append-only watermarks per (page, platform).
        - ``audit_log``: structured audit events.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema ensured (%d statements)", len(_SCHEMA_STATEMENTS))


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
