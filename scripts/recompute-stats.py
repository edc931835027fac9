#!/usr/bin/env python3
"""
Recompute per-conversation counters from stored messages.

Rewrites customer_count, business_count, started_time, last_message_at and
price_given for every conversation from the ``messages`` table.  Safe to
re-run.

Usage:
  /opt/msgstats/venv/bin/python3 /opt/msgstats/scripts/recompute-stats.py
"""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from shared.db import get_connection_pool
from shared.secrets import get_secret
from syncer.main import load_config
from syncer.sync_store import SyncStore

logger = logging.getLogger("recompute.stats")


async def recompute() -> None:
    config = load_config()
    db_config = dict(config["database"])
    db_config["user"] = os.environ.get("MSGSTATS_DB_USER") or db_config.get("user", "postgres")
    if "password" not in db_config:
        db_config["password"] = get_secret("db-password")
    pool = await get_connection_pool(db_config)

    try:
        can_update = await pool.fetchval(
            "SELECT has_table_privilege(current_user, 'conversations', 'UPDATE')"
        )
        if not can_update:
            raise PermissionError(
                "Current DB role cannot UPDATE conversations. "
                "Re-run with MSGSTATS_DB_USER=postgres or a migration role."
            )

        store = SyncStore(pool)
        before = await store.get_sync_stats()
        updated = await store.recompute_conversation_stats()
        logger.info(
            "Recompute complete. %d of %d conversations updated.",
            updated,
            before["total_conversations"],
        )
    finally:
        await pool.close()


def run() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    asyncio.run(recompute())


if __name__ == "__main__":
    run()
