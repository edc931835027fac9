"""
Syncer entry point — periodically syncs every configured page from the
Graph API into PostgreSQL.

Runs as a long-lived service.

Key behaviours:
    - Loads configuration from ``/etc/msgstats/settings.toml``
      (``MSGSTATS_CONFIG`` overrides the path).
    - Triggers one run per (page, platform) and waits for it before the
      next, since only one run can be active per process.
    - Handles SIGTERM / SIGINT for graceful shutdown between runs; a run
      that has started is always allowed to finish.
    - Logs every run to the audit log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List

import toml

from shared.audit import DEFAULT_LOG_PATH, AuditLogger
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import TOKEN_KEY_NAME, get_secret
from syncer.engine import SyncService
from syncer.graph_client import (
    DEFAULT_API_VERSION,
    DEFAULT_BASE_URL,
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT_SECONDS,
    GraphClient,
    RetryPolicy,
)
from syncer.models import PLATFORMS
from syncer.run_status import RunStatusRegistry
from syncer.sync_store import SyncStore
from syncer.worker_pool import DEFAULT_CONCURRENCY

logger = logging.getLogger("syncer.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("MSGSTATS_CONFIG", "/etc/msgstats/settings.toml")
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("database",),
        ("syncer", "pages"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def _coerce_number(section: Dict[str, Any], key: str, default: float, cast=float) -> Any:
    value = section.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r in config; using %s", key, value, default)
        return cast(default)


def _normalize_platforms(value: Any) -> List[str]:
    """Normalize ``syncer.platforms``; missing/invalid values mean messenger only."""
    if value is None:
        return ["messenger"]
    if isinstance(value, str):
        raw_items = [part.strip() for part in value.split(",")]
    elif isinstance(value, (list, tuple)):
        raw_items = [str(part).strip() for part in value]
    else:
        logger.warning("Invalid platforms config type (%s); using messenger", type(value).__name__)
        return ["messenger"]

    platforms = []
    for item in raw_items:
        item = item.lower()
        if item in PLATFORMS and item not in platforms:
            platforms.append(item)
    if not platforms:
        logger.warning("platforms has no valid values; using messenger")
        return ["messenger"]
    return platforms


def build_graph_client(config: Dict[str, Any]) -> GraphClient:
    graph = config.get("graph", {})
    retry = RetryPolicy(
        retries=max(0, _coerce_number(graph, "retries", 4, int)),
        min_delay=_coerce_number(graph, "min_delay_ms", 400) / 1000.0,
        max_delay=_coerce_number(graph, "max_delay_ms", 4000) / 1000.0,
    )
    return GraphClient(
        base_url=graph.get("base_url", DEFAULT_BASE_URL),
        api_version=graph.get("api_version", DEFAULT_API_VERSION),
        timeout=_coerce_number(graph, "timeout_seconds", DEFAULT_TIMEOUT_SECONDS),
        retry=retry,
        page_size=_coerce_number(graph, "page_size", DEFAULT_PAGE_SIZE, int),
    )


def build_sync_service(
    config: Dict[str, Any],
    client: GraphClient,
    store: SyncStore,
    audit: AuditLogger | None,
    encryption_key: str | None,
    registry: RunStatusRegistry | None = None,
) -> SyncService:
    syncer_config = config.get("syncer", {})
    return SyncService(
        client=client,
        store=store,
        registry=registry,
        encryption_key=encryption_key,
        audit=audit,
        concurrency=max(1, _coerce_number(syncer_config, "concurrency", DEFAULT_CONCURRENCY, int)),
        safety_window=timedelta(
            seconds=max(0.0, _coerce_number(syncer_config, "safety_window_seconds", 300))
        ),
        ig_enabled=bool(syncer_config.get("ig_enabled", False)),
    )


# ---------------------------------------------------------------------------
# Sync pass
# ---------------------------------------------------------------------------


async def sync_pass(service: SyncService, config: Dict[str, Any]) -> Dict[str, int]:
    """Run every configured (page, platform) once, one after the other.

    Returns:
        Counts of ``completed`` and ``errored`` runs.
    """
    syncer_config = config.get("syncer", {})
    pages = [str(p) for p in syncer_config.get("pages", [])]
    platforms = _normalize_platforms(syncer_config.get("platforms"))
    outcome = {"completed": 0, "errored": 0}

    for page_id in pages:
        for platform in platforms:
            if _shutdown_event.is_set():
                logger.info("Shutdown requested; ending sync pass early.")
                return outcome
            service.start_sync(page_id, platform)
            status = await service.wait()
            if status.error is not None:
                outcome["errored"] += 1
                logger.warning(
                    "Sync for page %s/%s ended with error: %s",
                    page_id,
                    platform,
                    status.error,
                )
            else:
                outcome["completed"] += 1
    return outcome


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    remaining = max(0.0, seconds)
    while remaining > 0:
        if _shutdown_event.is_set():
            return True
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main() -> None:
    """Top-level async entry point for the syncer service."""
    config = load_config()
    encryption_key = get_secret(TOKEN_KEY_NAME)

    db_config = dict(config["database"])
    if "password" not in db_config:
        db_config["password"] = get_secret("db-password")

    syncer_config = config.get("syncer", {})
    audit_path = Path(syncer_config.get("audit_log_path") or DEFAULT_LOG_PATH)

    pool = None
    audit = None
    try:
        pool = await get_connection_pool(db_config)
        if not await health_check(pool):
            raise RuntimeError("Database health check failed; refusing to start")
        await init_database(pool)
        store = SyncStore(pool)
        audit = AuditLogger(pool, service="syncer", log_path=audit_path)

        async with build_graph_client(config) as client:
            service = build_sync_service(config, client, store, audit, encryption_key)
            await audit.log("startup", {"pages": syncer_config.get("pages", [])})

            sync_interval = _coerce_number(syncer_config, "sync_interval_seconds", 900.0)
            pass_number = 0
            while not _shutdown_event.is_set():
                pass_number += 1
                outcome = await sync_pass(service, config)
                stats = await store.get_sync_stats()
                logger.info(
                    "Sync pass #%d complete: %d ok, %d failed | %d conversations, %d messages stored",
                    pass_number,
                    outcome["completed"],
                    outcome["errored"],
                    stats["total_conversations"],
                    stats["total_messages"],
                )
                await _sleep_with_shutdown(sync_interval)
    finally:
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Syncer shut down cleanly.")


def run() -> None:
    """Synchronous entry point (console script or ``python -m syncer.main``)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
