"""
Run status registry — the one piece of state shared by concurrent sync tasks.

A ``RunStatusRegistry`` is created once per process and passed by reference
to the engine and to whatever serves status queries.  It holds a single
``RunStatus``: the current run, or the most recent one after it finishes.

State machine::

    idle ──try_start──▶ running ──complete──▶ completed
                           │
                           └──────fail──────▶ errored

Terminal states are kept until the next accepted ``try_start`` overwrites
them.  ``try_start`` is a compare-and-swap on the running flag, so two
triggers can never both be accepted.  Every mutation takes the same lock,
which keeps counters consistent however task completions interleave.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger("syncer.run_status")

IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
ERRORED = "errored"


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True, slots=True)
class RunStatus:
    """Immutable snapshot of the registry."""

    state: str = IDLE
    run_id: Optional[str] = None
    page_id: Optional[str] = None
    platform: Optional[str] = None
    conversations_processed: int = 0
    messages_processed: int = 0
    conversations_total_estimate: Optional[int] = None
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.state == RUNNING

    def to_payload(self) -> Dict[str, Any]:
        """Render the status-query response body."""
        payload: Dict[str, Any] = {
            "running": self.running,
            "state": self.state,
            "pageId": self.page_id,
            "platform": self.platform,
            "conversationsProcessed": self.conversations_processed,
            "messagesProcessed": self.messages_processed,
            "startedAt": _iso(self.started_at),
            "lastUpdatedAt": _iso(self.last_updated_at),
        }
        if self.conversations_total_estimate is not None:
            payload["conversationsTotalEstimate"] = self.conversations_total_estimate
        if self.error is not None:
            payload["error"] = self.error
        return payload


class RunStatusRegistry:
    """Lock-guarded holder of the process-wide ``RunStatus``.

    Methods that record progress take the ``run_id`` they belong to and are
    ignored when it is not the current run, so a straggler from an older
    run can never bump a newer run's counters.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status = RunStatus()
        self._monotonic_start = time.monotonic()

    def snapshot(self) -> RunStatus:
        with self._lock:
            return self._status

    def try_start(self, run_id: str, page_id: str, platform: str) -> Tuple[bool, RunStatus]:
        """Atomically enter ``running`` unless a run is already in flight.

        Returns:
            ``(accepted, status)``; when not accepted, ``status`` is the
            in-flight run's snapshot.
        """
        now = datetime.now(timezone.utc)
        with self._lock:
            if self._status.running:
                return False, self._status
            self._status = RunStatus(
                state=RUNNING,
                run_id=run_id,
                page_id=page_id,
                platform=platform,
                started_at=now,
                last_updated_at=now,
            )
            self._monotonic_start = time.monotonic()
            return True, self._status

    def set_total_estimate(self, run_id: str, total: int) -> None:
        """Record the conversation count once the list is known (first call wins)."""
        with self._lock:
            if self._status.run_id != run_id:
                return
            if self._status.conversations_total_estimate is not None:
                return
            self._status = replace(
                self._status,
                conversations_total_estimate=total,
                last_updated_at=datetime.now(timezone.utc),
            )

    def record_conversation(self, run_id: str, messages: int) -> RunStatus:
        """Count one finished conversation and its messages."""
        with self._lock:
            if self._status.run_id == run_id:
                self._status = replace(
                    self._status,
                    conversations_processed=self._status.conversations_processed + 1,
                    messages_processed=self._status.messages_processed + messages,
                    last_updated_at=datetime.now(timezone.utc),
                )
            return self._status

    def complete(self, run_id: str) -> None:
        self._finish(run_id, COMPLETED, None)

    def fail(self, run_id: str, error: str) -> None:
        self._finish(run_id, ERRORED, error or "Unknown sync error")

    def _finish(self, run_id: str, state: str, error: Optional[str]) -> None:
        with self._lock:
            if self._status.run_id != run_id or not self._status.running:
                return
            self._status = replace(
                self._status,
                state=state,
                error=error,
                last_updated_at=datetime.now(timezone.utc),
            )

    # ------------------------------------------------------------------
    # Progress logging
    # ------------------------------------------------------------------

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._monotonic_start

    def eta_seconds(self, status: Optional[RunStatus] = None) -> Optional[float]:
        """Estimated seconds until all listed conversations are processed."""
        status = status or self.snapshot()
        total = status.conversations_total_estimate
        done = status.conversations_processed
        elapsed = self.elapsed_seconds()
        if not total or done <= 0 or elapsed <= 0:
            return None
        rate = done / elapsed
        return max(0, total - done) / rate

    def log_progress(self, status: Optional[RunStatus] = None) -> None:
        status = status or self.snapshot()
        total = status.conversations_total_estimate
        elapsed = _format_duration(self.elapsed_seconds())
        if total:
            pct = min(100, int(status.conversations_processed / total * 100))
            eta = self.eta_seconds(status)
            eta_str = f"ETA: ~{_format_duration(eta)}" if eta is not None else ""
            logger.info(
                "  [Page %s/%s] %d/%d conversations (%d%%), %d messages | %s | %s",
                status.page_id,
                status.platform,
                status.conversations_processed,
                total,
                pct,
                status.messages_processed,
                elapsed,
                eta_str,
            )
        else:
            logger.info(
                "  [Page %s/%s] %d conversations, %d messages | %s",
                status.page_id,
                status.platform,
                status.conversations_processed,
                status.messages_processed,
                elapsed,
            )
