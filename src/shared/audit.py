"""
Structured audit trail for sync runs — JSON Lines file plus the
``audit_log`` table.

Events are queued and written by a background task in small batches, so
recording an event never blocks a sync worker on disk or database I/O.
A failed file or database write is logged and does not fail the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

DEFAULT_LOG_PATH = Path("/var/log/msgstats/audit.log")
_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, details, success) "
    "VALUES ($1, $2, $3::jsonb, $4)"
)


@dataclass(slots=True)
class _AuditRecord:
    json_line: str
    action: str
    details_json: str
    success: bool


class AuditLogger:
    """Buffered audit logger bound to one service name.

    Args:
        pool: ``asyncpg`` pool, or ``None`` to write the file only.
        service: Service label stored with every event (``"syncer"``).
        log_path: JSON Lines file, or ``None`` to write the table only.
        queue_size: Max queued events before producers backpressure.
        flush_batch_size: Events written per batch.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        service: str = "syncer",
        log_path: Optional[Path] = DEFAULT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._service = service
        self._log_path = log_path
        self._queue: asyncio.Queue[_AuditRecord | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    def _ensure_worker(self) -> None:
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(
                self._worker(),
                name=f"msgstats-audit-writer-{self._service}",
            )

    async def _write_batch(self, batch: list[_AuditRecord]) -> None:
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._log_path, "a", encoding="utf-8") as handle:
                    handle.write("".join(item.json_line for item in batch))
            except OSError:
                logger.exception("Failed to write audit log file")

        if self._pool is not None:
            try:
                async with self._pool.acquire() as conn:
                    await conn.executemany(
                        _INSERT_AUDIT_SQL,
                        [
                            (self._service, item.action, item.details_json, item.success)
                            for item in batch
                        ],
                    )
            except Exception:
                logger.exception("Failed to write audit log to database")

    async def _worker(self) -> None:
        """Drain the queue, flushing whatever is ready as one batch."""
        while True:
            record = await self._queue.get()
            if record is None:
                self._queue.task_done()
                return

            batch = [record]
            stop = False
            while len(batch) < self._flush_batch_size:
                try:
                    maybe_next = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if maybe_next is None:
                    self._queue.task_done()
                    stop = True
                    break
                batch.append(maybe_next)

            await self._write_batch(batch)
            for _ in batch:
                self._queue.task_done()
            if stop:
                return

    async def log(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event (``sync_run_start``, ``sync_run_error``, ...)."""
        if self._closed:
            logger.debug("Dropping audit event after close: action=%s", action)
            return
        details_payload = details or {}
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service,
            "action": action,
            "details": details_payload,
            "success": success,
        }
        self._ensure_worker()
        await self._queue.put(
            _AuditRecord(
                json_line=json.dumps(event, default=str) + "\n",
                action=action,
                details_json=json.dumps(details_payload, default=str),
                success=success,
            )
        )

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            await self._queue.put(None)
            await self._worker_task
            self._worker_task = None
