"""
Shared fixtures: an in-memory stand-in for ``SyncStore`` and a fake Graph
API served through ``httpx.MockTransport``.
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import httpx
import pytest

from shared.secrets import encrypt_token, generate_encryption_key
from syncer.errors import PersistenceError
from syncer.graph_client import GraphClient, RetryPolicy
from syncer.models import ConversationRecord, IgAsset, MessageRecord, PageRecord

PAGE_ID = "page-1"
PAGE_TOKEN = "EAAB-page-token"

NO_WAIT = RetryPolicy(retries=4, min_delay=0.0, max_delay=0.0)


def graph_time(value: datetime) -> str:
    """Render a datetime the way the Graph API does (``+0000`` offset)."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+0000")


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryStore:
    """Honours the same write contract as ``SyncStore``, without a database."""

    def __init__(self) -> None:
        self.pages: Dict[str, PageRecord] = {}
        self.ig_assets: Dict[str, Tuple[str, IgAsset]] = {}
        self.conversations: Dict[str, ConversationRecord] = {}
        self.messages: Dict[str, MessageRecord] = {}
        self.watermarks: List[Tuple[str, str, datetime]] = []
        self.fail_on_conversation: Set[str] = set()
        self.persist_calls = 0

    async def get_page(self, page_id: str) -> Optional[PageRecord]:
        page = self.pages.get(page_id)
        return replace(page) if page else None

    async def list_pages(self) -> List[PageRecord]:
        return [replace(p) for p in sorted(self.pages.values(), key=lambda p: p.name)]

    async def upsert_page(self, page_id: str, name: str, encrypted_access_token: str) -> None:
        existing = self.pages.get(page_id)
        self.pages[page_id] = PageRecord(
            id=page_id,
            name=name,
            encrypted_access_token=encrypted_access_token,
            ig_business_id=existing.ig_business_id if existing else None,
        )

    async def update_page_name(self, page_id: str, name: str) -> None:
        if page_id in self.pages:
            self.pages[page_id].name = name

    async def upsert_ig_assets(self, page_id: str, assets: Sequence[IgAsset]) -> None:
        for asset in assets:
            self.ig_assets[asset.id] = (page_id, asset)
        if assets and page_id in self.pages:
            self.pages[page_id].ig_business_id = assets[0].id

    async def latest_watermark(self, page_id: str, platform: str) -> Optional[datetime]:
        for stored_page, stored_platform, value in reversed(self.watermarks):
            if stored_page == page_id and stored_platform == platform:
                return value
        return None

    async def append_watermark(self, page_id: str, platform: str, last_synced_at: datetime) -> None:
        self.watermarks.append((page_id, platform, last_synced_at))

    async def persist_conversation(
        self,
        conversation: ConversationRecord,
        messages: Sequence[MessageRecord],
    ) -> int:
        self.persist_calls += 1
        if conversation.id in self.fail_on_conversation:
            raise PersistenceError(f"Failed to persist conversation {conversation.id}: boom")

        inserted = 0
        for msg in messages:
            if msg.id not in self.messages:
                self.messages[msg.id] = msg
                inserted += 1

        existing = self.conversations.get(conversation.id)
        if existing is None:
            self.conversations[conversation.id] = replace(conversation)
        else:
            self.conversations[conversation.id] = replace(
                existing,
                updated_time=conversation.updated_time,
                started_time=conversation.started_time,
                last_message_at=conversation.last_message_at,
                customer_count=conversation.customer_count,
                business_count=conversation.business_count,
            )
        return inserted

    async def get_sync_stats(self) -> Dict[str, Any]:
        return {
            "total_pages": len(self.pages),
            "total_conversations": len(self.conversations),
            "total_messages": len(self.messages),
            "newest_message": None,
        }


# ---------------------------------------------------------------------------
# Fake Graph API
# ---------------------------------------------------------------------------


class FakeGraph:
    """Minimal Graph API: page node, conversation list, conversation messages.

    Lists honour ``limit``/``after`` and answer with absolute ``paging.next``
    links.  Conversation ids in ``failing`` answer HTTP 400 with an error
    envelope.  With ``embed_messages`` off, the conversation node carries no
    ``messages`` field, forcing the list-endpoint fallback.
    """

    def __init__(self, page_id: str = PAGE_ID, page_name: str = "Acme Store") -> None:
        self.page_id = page_id
        self.page_name = page_name
        self.conversations: List[Dict[str, Any]] = []
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.ig_accounts: List[Dict[str, Any]] = []
        self.embed_messages = True
        self.failing: Set[str] = set()
        self.requests: List[httpx.Request] = []

    def add_conversation(
        self,
        conversation_id: str,
        updated_time: datetime,
        messages: Sequence[Tuple[str, str, datetime, Optional[str]]] = (),
    ) -> None:
        """Register a conversation; ``messages`` are (id, sender_id, created, body)."""
        self.conversations.append(
            {"id": conversation_id, "updated_time": graph_time(updated_time)}
        )
        self.messages[conversation_id] = [
            {
                "id": message_id,
                "from": {"id": sender_id},
                "created_time": graph_time(created),
                **({"message": body} if body is not None else {}),
            }
            for message_id, sender_id, created, body in messages
        ]

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    def client(self, page_size: int = 50, retry: RetryPolicy = NO_WAIT) -> GraphClient:
        return GraphClient(
            transport=httpx.MockTransport(self.handler),
            retry=retry,
            page_size=page_size,
        )

    def _page(self, request: httpx.Request, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        limit = int(request.url.params.get("limit", "50"))
        offset = int(request.url.params.get("after", "0"))
        body: Dict[str, Any] = {"data": items[offset:offset + limit]}
        if offset + limit < len(items):
            body["paging"] = {
                "next": str(request.url.copy_set_param("after", str(offset + limit)))
            }
        return body

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path.strip("/").split("/")[1:]
        node = parts[0]
        fields = request.url.params.get("fields", "")

        if node in self.failing:
            return httpx.Response(
                400,
                json={"error": {"message": f"Unsupported get request for {node}", "code": 100}},
            )

        if len(parts) == 1 and node == self.page_id:
            return httpx.Response(200, json={"id": self.page_id, "name": self.page_name})

        if len(parts) == 2 and node == self.page_id and parts[1] == "conversations":
            return httpx.Response(200, json=self._page(request, self.conversations))

        if len(parts) == 2 and node == self.page_id and parts[1] == "instagram_accounts":
            return httpx.Response(200, json=self._page(request, self.ig_accounts))

        if node in self.messages:
            items = self.messages[node]
            if len(parts) == 2 and parts[1] == "messages":
                return httpx.Response(200, json=self._page(request, items))
            if len(parts) == 1 and fields.startswith("messages."):
                if not self.embed_messages:
                    return httpx.Response(200, json={"id": node})
                limit = int(fields.split("(", 1)[1].split(")", 1)[0])
                embedded: Dict[str, Any] = {"data": items[:limit]}
                if limit < len(items):
                    next_url = httpx.URL(
                        f"{request.url.scheme}://{request.url.host}"
                        f"/{request.url.path.strip('/').split('/')[0]}/{node}/messages",
                        params={
                            "access_token": request.url.params.get("access_token", ""),
                            "limit": str(limit),
                            "after": str(limit),
                        },
                    )
                    embedded["paging"] = {"next": str(next_url)}
                return httpx.Response(200, json={"id": node, "messages": embedded})

        return httpx.Response(
            404, json={"error": {"message": f"Unknown path {request.url.path}", "code": 803}}
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def encryption_key() -> str:
    return generate_encryption_key()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def connected_store(store: InMemoryStore, encryption_key: str) -> InMemoryStore:
    """Store with ``PAGE_ID`` connected and its token encrypted."""
    store.pages[PAGE_ID] = PageRecord(
        id=PAGE_ID,
        name="Old Name",
        encrypted_access_token=encrypt_token(PAGE_TOKEN, encryption_key),
    )
    return store


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()
