"""
PostgreSQL persistence for pages, conversations, messages and watermarks.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), never string interpolation of values.

Write contract:
    - conversations: upsert keyed by id; derived fields are overwritten,
      platform/page linkage and the legacy price flag are written only on
      first insert.
    - messages: insert-if-absent keyed by id (first write wins).
    - sync_states: append-only; the current watermark is the newest row.

Concurrent sync workers share one ``SyncStore``; every write goes through
``_write_lock`` so writes reach the database one conversation at a time.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from syncer.errors import PersistenceError
from syncer.models import ConversationRecord, IgAsset, MessageRecord, PageRecord

logger = logging.getLogger("syncer.sync_store")

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

# Postgres caps bind parameters at 32767 per statement.
_MESSAGE_CHUNK_ROWS = 1000
_MESSAGE_ROW_WIDTH = 6

_UPSERT_CONVERSATION_SQL = """
    INSERT INTO conversations (
        id, platform, page_id, ig_business_id,
        updated_time, started_time, last_message_at,
        customer_count, business_count, price_given
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    ON CONFLICT (id)
    DO UPDATE SET
        updated_time = EXCLUDED.updated_time,
        started_time = EXCLUDED.started_time,
        last_message_at = EXCLUDED.last_message_at,
        customer_count = EXCLUDED.customer_count,
        business_count = EXCLUDED.business_count
"""

_UPSERT_PAGE_SQL = """
    INSERT INTO pages (id, name, encrypted_access_token, updated_at)
    VALUES ($1, $2, $3, NOW())
    ON CONFLICT (id)
    DO UPDATE SET
        name = EXCLUDED.name,
        encrypted_access_token = EXCLUDED.encrypted_access_token,
        updated_at = NOW()
"""

_UPSERT_IG_ASSET_SQL = """
    INSERT INTO ig_assets (id, name, page_id, updated_at)
    VALUES ($1, $2, $3, NOW())
    ON CONFLICT (id)
    DO UPDATE SET
        name = EXCLUDED.name,
        page_id = EXCLUDED.page_id,
        updated_at = NOW()
"""

_SELECT_PAGE_SQL = """
    SELECT p.id, p.name, p.encrypted_access_token,
           (
               SELECT a.id FROM ig_assets a
               WHERE a.page_id = p.id
               ORDER BY a.updated_at DESC
               LIMIT 1
           ) AS ig_business_id
    FROM pages p
"""

_RECOMPUTE_SQL = """
    UPDATE conversations AS c
    SET customer_count = COALESCE(s.customer_count, 0),
        business_count = COALESCE(s.business_count, 0),
        started_time = COALESCE(s.started_time, c.updated_time),
        last_message_at = COALESCE(s.last_message_at, c.updated_time),
        price_given = COALESCE(s.price_given, FALSE)
    FROM conversations AS c2
    LEFT JOIN (
        SELECT conversation_id,
               COUNT(*) FILTER (WHERE sender_type = 'customer') AS customer_count,
               COUNT(*) FILTER (WHERE sender_type = 'business') AS business_count,
               MIN(created_time) AS started_time,
               MAX(created_time) AS last_message_at,
               BOOL_OR(sender_type = 'business' AND POSITION('$' IN COALESCE(body, '')) > 0)
                   AS price_given
        FROM messages
        GROUP BY conversation_id
    ) AS s ON s.conversation_id = c2.id
    WHERE c.id = c2.id
"""


def _status_rowcount(status: str) -> int:
    # asyncpg command status format: "INSERT 0 <rowcount>" / "UPDATE <rowcount>"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError, AttributeError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


class SyncStore:
    """Sync persistence in PostgreSQL.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._write_lock = asyncio.Lock()
        self._batch_insert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Conversations and messages
    # ------------------------------------------------------------------

    def _message_params(self, msg: MessageRecord) -> tuple:
        return (
            msg.id,
            msg.conversation_id,
            msg.page_id,
            msg.sender_type.value,
            msg.body,
            msg.created_time,
        )

    def _build_batch_insert_sql(self, row_count: int) -> str:
        sql = self._batch_insert_sql_cache.get(row_count)
        if sql is not None:
            return sql
        values_sql: List[str] = []
        for idx in range(row_count):
            base = idx * _MESSAGE_ROW_WIDTH
            placeholders = ", ".join(
                f"${base + i}" for i in range(1, _MESSAGE_ROW_WIDTH + 1)
            )
            values_sql.append(f"({placeholders})")
        sql = (
            "INSERT INTO messages ("
            "id, conversation_id, page_id, sender_type, body, created_time"
            ") VALUES "
            + ", ".join(values_sql)
            + " ON CONFLICT (id) DO NOTHING"
        )
        self._batch_insert_sql_cache[row_count] = sql
        return sql

    async def _insert_messages(
        self,
        conn: asyncpg.Connection,
        messages: Sequence[MessageRecord],
    ) -> int:
        inserted = 0
        for start in range(0, len(messages), _MESSAGE_CHUNK_ROWS):
            chunk = messages[start:start + _MESSAGE_CHUNK_ROWS]
            params: List[Any] = []
            for msg in chunk:
                params.extend(self._message_params(msg))
            status = await conn.execute(self._build_batch_insert_sql(len(chunk)), *params)
            inserted += _status_rowcount(status)
        return inserted

    async def persist_conversation(
        self,
        conversation: ConversationRecord,
        messages: Sequence[MessageRecord],
    ) -> int:
        """Write one conversation and its messages in a single transaction.

        Returns:
            Number of messages newly inserted (existing ids are left as is).

        Raises:
            PersistenceError: If the database write fails.
        """
        async with self._write_lock:
            try:
                async with self._pool.acquire() as conn:
                    async with conn.transaction():
                        inserted = await self._insert_messages(conn, messages)
                        await conn.execute(
                            _UPSERT_CONVERSATION_SQL,
                            conversation.id,
                            conversation.platform,
                            conversation.page_id,
                            conversation.ig_business_id,
                            conversation.updated_time,
                            conversation.started_time,
                            conversation.last_message_at,
                            conversation.customer_count,
                            conversation.business_count,
                            conversation.price_given,
                        )
            except _DB_ERRORS as exc:
                raise PersistenceError(
                    f"Failed to persist conversation {conversation.id}: {exc}"
                ) from exc

        logger.debug(
            "Persisted conversation %s: %d/%d new messages",
            conversation.id,
            inserted,
            len(messages),
        )
        return inserted

    async def recompute_conversation_stats(self) -> int:
        """Rebuild counts, activity times and price flag from stored messages.

        Returns:
            Number of conversation rows updated.
        """
        async with self._write_lock:
            try:
                status = await self._pool.execute(_RECOMPUTE_SQL)
            except _DB_ERRORS as exc:
                raise PersistenceError(f"Failed to recompute conversation stats: {exc}") from exc
        return _status_rowcount(status)

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    async def latest_watermark(self, page_id: str, platform: str) -> Optional[datetime]:
        """Return the newest ``last_synced_at`` for the key, or ``None``."""
        return await self._pool.fetchval(
            """
            SELECT last_synced_at
            FROM sync_states
            WHERE page_id = $1 AND platform = $2
            ORDER BY id DESC
            LIMIT 1
            """,
            page_id,
            platform,
        )

    async def append_watermark(
        self,
        page_id: str,
        platform: str,
        last_synced_at: datetime,
    ) -> None:
        async with self._write_lock:
            try:
                await self._pool.execute(
                    """
                    INSERT INTO sync_states (page_id, platform, last_synced_at, updated_at)
                    VALUES ($1, $2, $3, NOW())
                    """,
                    page_id,
                    platform,
                    last_synced_at,
                )
            except _DB_ERRORS as exc:
                raise PersistenceError(
                    f"Failed to store watermark for {page_id}/{platform}: {exc}"
                ) from exc

    # ------------------------------------------------------------------
    # Pages and linked assets
    # ------------------------------------------------------------------

    @staticmethod
    def _page_from_row(row: Any) -> PageRecord:
        return PageRecord(
            id=row["id"],
            name=row["name"],
            encrypted_access_token=row["encrypted_access_token"],
            ig_business_id=row["ig_business_id"],
        )

    async def get_page(self, page_id: str) -> Optional[PageRecord]:
        row = await self._pool.fetchrow(_SELECT_PAGE_SQL + " WHERE p.id = $1", page_id)
        return self._page_from_row(row) if row else None

    async def list_pages(self) -> List[PageRecord]:
        rows = await self._pool.fetch(_SELECT_PAGE_SQL + " ORDER BY p.name")
        return [self._page_from_row(row) for row in rows]

    async def upsert_page(
        self,
        page_id: str,
        name: str,
        encrypted_access_token: str,
    ) -> None:
        async with self._write_lock:
            try:
                await self._pool.execute(_UPSERT_PAGE_SQL, page_id, name, encrypted_access_token)
            except _DB_ERRORS as exc:
                raise PersistenceError(f"Failed to store page {page_id}: {exc}") from exc

    async def update_page_name(self, page_id: str, name: str) -> None:
        async with self._write_lock:
            try:
                await self._pool.execute(
                    """
                    UPDATE pages SET name = $2, updated_at = NOW()
                    WHERE id = $1 AND name IS DISTINCT FROM $2
                    """,
                    page_id,
                    name,
                )
            except _DB_ERRORS as exc:
                raise PersistenceError(f"Failed to rename page {page_id}: {exc}") from exc

    async def upsert_ig_assets(self, page_id: str, assets: Sequence[IgAsset]) -> None:
        if not assets:
            return
        async with self._write_lock:
            try:
                async with self._pool.acquire() as conn:
                    await conn.executemany(
                        _UPSERT_IG_ASSET_SQL,
                        [(asset.id, asset.name, page_id) for asset in assets],
                    )
            except _DB_ERRORS as exc:
                raise PersistenceError(
                    f"Failed to store Instagram assets for page {page_id}: {exc}"
                ) from exc

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def get_sync_stats(self) -> Dict[str, Any]:
        """Return summary statistics for monitoring."""
        async with self._pool.acquire() as conn:
            total_pages = await conn.fetchval("SELECT COUNT(*) FROM pages")
            total_conversations = await conn.fetchval("SELECT COUNT(*) FROM conversations")
            total_messages = await conn.fetchval("SELECT COUNT(*) FROM messages")
            newest_message = await conn.fetchval("SELECT MAX(created_time) FROM messages")

        return {
            "total_pages": total_pages or 0,
            "total_conversations": total_conversations or 0,
            "total_messages": total_messages or 0,
            "newest_message": newest_message.isoformat() if newest_message else None,
        }
