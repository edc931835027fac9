"""
Sync run orchestration — trigger, background run, and status query.

``SyncService.start_sync`` is what an outer HTTP layer calls: it claims
the run status registry with one compare-and-swap, spawns the run as an
``asyncio.Task`` and returns immediately.  The run itself:

    1. loads the page and decrypts its access token,
    2. refreshes the page display name (best effort),
    3. computes the effective ``since`` from the stored watermark,
    4. lists conversations and drops any older than ``since``,
    5. fans conversations out to a bounded worker pool; each worker
       fetches messages, aggregates, persists, and bumps the registry,
    6. commits the new watermark and marks the run completed.

Any ``SyncError`` (or unexpected exception) ends the run at a single
boundary in ``_run``, which marks the registry errored.  The trigger
caller never sees it.

Only one run is active per process, whatever the page: a trigger while a
run is in flight is ignored and answered with the in-flight page id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from shared.audit import AuditLogger
from shared.secrets import InvalidToken, decrypt_token
from syncer.aggregator import aggregate_conversation
from syncer.errors import MissingCredentialError, SyncError
from syncer.fetchers import (
    fetch_conversation_messages,
    fetch_conversations,
    fetch_instagram_assets,
    fetch_page_name,
)
from syncer.graph_client import GraphClient
from syncer.models import PLATFORMS, GraphConversation, PageRecord
from syncer.run_status import RunStatus, RunStatusRegistry
from syncer.sync_store import SyncStore
from syncer.watermark import DEFAULT_SAFETY_WINDOW, WatermarkTracker, max_updated_time
from syncer.worker_pool import DEFAULT_CONCURRENCY, run_bounded

logger = logging.getLogger("syncer.engine")


def resolve_page_token(
    page: Optional[PageRecord],
    page_id: str,
    encryption_key: Optional[str],
) -> str:
    """Decrypt a page's stored access token.

    Raises:
        MissingCredentialError: Page unknown, no token stored, no key, or
            the token does not decrypt with the configured key.
    """
    if page is None:
        raise MissingCredentialError(f"Page {page_id} is not connected.")
    if not page.encrypted_access_token:
        raise MissingCredentialError(
            f"Missing page access token for page {page_id}. Re-connect the page."
        )
    if not encryption_key:
        raise MissingCredentialError("No token encryption key configured.")
    try:
        token = decrypt_token(page.encrypted_access_token, encryption_key)
    except (InvalidToken, ValueError) as exc:
        raise MissingCredentialError(
            f"Access token for page {page_id} could not be decrypted."
        ) from exc
    if not token:
        raise MissingCredentialError(f"Access token for page {page_id} is empty.")
    return token


class SyncService:
    """Owns sync runs for one process.

    Args:
        client: Graph API client shared by all runs.
        store: Persistence layer.
        registry: Run status registry; also read by the status query.
        encryption_key: Fernet key for stored page tokens.
        audit: Optional audit logger.
        concurrency: Max conversations processed at once.
        safety_window: Overlap subtracted from the stored watermark.
        ig_enabled: Refresh linked Instagram assets at the start of a run.
        progress_every: Log a progress line every N conversations.
    """

    def __init__(
        self,
        client: GraphClient,
        store: SyncStore,
        registry: Optional[RunStatusRegistry] = None,
        encryption_key: Optional[str] = None,
        audit: Optional[AuditLogger] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        safety_window: timedelta = DEFAULT_SAFETY_WINDOW,
        ig_enabled: bool = False,
        progress_every: int = 5,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._client = client
        self._store = store
        self.registry = registry or RunStatusRegistry()
        self._encryption_key = encryption_key
        self._audit = audit
        self._concurrency = concurrency
        self._watermarks = WatermarkTracker(store, safety_window)
        self._ig_enabled = ig_enabled
        self._progress_every = max(1, progress_every)
        self._task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # External interface
    # ------------------------------------------------------------------

    def start_sync(self, page_id: str, platform: str = "messenger") -> str:
        """Accept a sync trigger and return immediately.

        Must be called from within the running event loop.

        Returns:
            A new run id, or the in-flight page id when a run is already
            active (the trigger is then ignored).
        """
        if platform not in PLATFORMS:
            raise ValueError(f"Unsupported platform: {platform!r}")

        run_id = uuid.uuid4().hex
        accepted, current = self.registry.try_start(run_id, page_id, platform)
        if not accepted:
            logger.info(
                "Sync already running for page %s; ignoring trigger for page %s",
                current.page_id,
                page_id,
            )
            return current.page_id or ""

        logger.info("Accepted sync run %s for page %s/%s", run_id, page_id, platform)
        self._task = asyncio.get_running_loop().create_task(
            self._run(run_id, page_id, platform),
            name=f"msgstats-sync-{page_id}-{platform}",
        )
        return run_id

    def status(self) -> RunStatus:
        return self.registry.snapshot()

    async def wait(self) -> RunStatus:
        """Wait for the most recently spawned run to finish."""
        task = self._task
        if task is not None:
            await task
        return self.status()

    # ------------------------------------------------------------------
    # Run boundary
    # ------------------------------------------------------------------

    async def _record(self, action: str, details: Dict[str, Any], success: bool = True) -> None:
        if self._audit is not None:
            await self._audit.log(action, details, success=success)

    async def _run(self, run_id: str, page_id: str, platform: str) -> None:
        base = {"run_id": run_id, "page_id": page_id, "platform": platform}
        try:
            await self._record("sync_run_start", base)
            summary = await self._perform(run_id, page_id, platform)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            if isinstance(exc, SyncError):
                logger.error("Sync run %s for page %s/%s failed: %s", run_id, page_id, platform, message)
            else:
                logger.exception("Unexpected error in sync run %s for page %s", run_id, page_id)
            self.registry.fail(run_id, message)
            status = self.registry.snapshot()
            try:
                await self._record(
                    "sync_run_error",
                    {
                        **base,
                        "error": message,
                        "error_type": type(exc).__name__,
                        "conversations_processed": status.conversations_processed,
                        "messages_processed": status.messages_processed,
                    },
                    success=False,
                )
            except Exception:
                logger.exception("Failed to record sync_run_error audit event")
            return

        self.registry.complete(run_id)
        status = self.registry.snapshot()
        self.registry.log_progress(status)
        logger.info(
            "Sync run %s complete: %d conversations, %d messages (%d new)",
            run_id,
            status.conversations_processed,
            status.messages_processed,
            summary["new_messages"],
        )
        try:
            await self._record("sync_run_complete", {**base, **summary})
        except Exception:
            logger.exception("Failed to record sync_run_complete audit event")

    # ------------------------------------------------------------------
    # Run body
    # ------------------------------------------------------------------

    async def _refresh_page_name(self, page: PageRecord, token: str) -> None:
        try:
            name = await fetch_page_name(self._client, page.id, token)
        except SyncError as exc:
            logger.warning("Could not resolve name for page %s: %s", page.id, exc)
            return
        if name != page.name:
            await self._store.update_page_name(page.id, name)
            logger.info("Page %s renamed: %r -> %r", page.id, page.name, name)

    async def _resolve_ig_business_id(self, page: PageRecord, token: str) -> Optional[str]:
        if self._ig_enabled:
            assets = await fetch_instagram_assets(self._client, page.id, token)
            await self._store.upsert_ig_assets(page.id, assets)
            if assets:
                return assets[0].id
        return page.ig_business_id

    async def _perform(self, run_id: str, page_id: str, platform: str) -> Dict[str, Any]:
        page = await self._store.get_page(page_id)
        token = resolve_page_token(page, page_id, self._encryption_key)

        await self._refresh_page_name(page, token)
        ig_business_id = await self._resolve_ig_business_id(page, token)
        if platform != "instagram":
            ig_business_id = None

        since = await self._watermarks.effective_since(page_id, platform)
        listed = await fetch_conversations(
            self._client, page_id, token, platform=platform, since=since
        )
        conversations = WatermarkTracker.discard_stale(listed, since)
        self.registry.set_total_estimate(run_id, len(conversations))

        new_messages = 0

        async def _process(conversation: GraphConversation) -> None:
            nonlocal new_messages
            messages = await fetch_conversation_messages(self._client, conversation.id, token)
            record, message_records = aggregate_conversation(
                conversation,
                messages,
                page_id=page_id,
                platform=platform,
                ig_business_id=ig_business_id,
            )
            inserted = await self._store.persist_conversation(record, message_records)
            new_messages += inserted
            status = self.registry.record_conversation(run_id, len(message_records))
            if status.conversations_processed % self._progress_every == 0:
                self.registry.log_progress(status)

        processed = await run_bounded(
            conversations,
            _process,
            concurrency=self._concurrency,
            name=f"sync-{page_id}",
        )
        watermark = await self._watermarks.commit(
            page_id, platform, max_updated_time(conversations)
        )
        return {
            "conversations_listed": len(listed),
            "conversations_processed": processed,
            "new_messages": new_messages,
            "since": since.isoformat() if since else None,
            "watermark": watermark.isoformat(),
        }


async def refresh_page_names(
    client: GraphClient,
    store: SyncStore,
    encryption_key: Optional[str],
) -> Dict[str, str]:
    """Re-resolve the display name of every stored page.

    Pages whose token or lookup fails are logged and skipped.

    Returns:
        Mapping of page id to the name now stored.
    """
    names: Dict[str, str] = {}
    for page in await store.list_pages():
        try:
            token = resolve_page_token(page, page.id, encryption_key)
            name = await fetch_page_name(client, page.id, token)
        except SyncError as exc:
            logger.warning("Skipping name refresh for page %s: %s", page.id, exc)
            continue
        if name != page.name:
            await store.update_page_name(page.id, name)
        names[page.id] = name
    return names
