"""
Typed fetchers over :class:`syncer.graph_client.GraphClient`.

Each fetcher builds the request for one Graph endpoint, lets the client
resolve paging and retries, and converts the raw items into domain
records.  Items missing an id or timestamp are skipped with a warning.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from syncer.errors import PermanentAPIError
from syncer.graph_client import GraphClient
from syncer.models import GraphConversation, GraphMessage, IgAsset

logger = logging.getLogger("syncer.fetchers")

CONVERSATION_FIELDS = ("id", "updated_time")
MESSAGE_FIELDS = ("id", "from", "created_time", "message")
PAGE_NAME_FIELDS = ("id", "name")
IG_ACCOUNT_FIELDS = ("id", "name")

_GRAPH_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def parse_graph_time(value: Any) -> datetime:
    """Parse a Graph timestamp (``2024-01-15T10:00:00+0000``) to aware UTC.

    Epoch seconds and ``datetime`` instances are accepted as well.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.strptime(value, _GRAPH_TIME_FORMAT)
        except ValueError:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_epoch_seconds(value: datetime) -> int:
    return int(value.timestamp())


def _parse_conversation(item: Dict[str, Any]) -> Optional[GraphConversation]:
    try:
        return GraphConversation(
            id=str(item["id"]),
            updated_time=parse_graph_time(item.get("updated_time")),
        )
    except (KeyError, ValueError):
        logger.warning("Skipping malformed conversation item: %s", item.get("id"))
        return None


def _parse_message(item: Dict[str, Any]) -> Optional[GraphMessage]:
    sender = item.get("from") or {}
    sender_id = sender.get("id") if isinstance(sender, dict) else None
    try:
        return GraphMessage(
            id=str(item["id"]),
            sender_id=str(sender_id) if sender_id is not None else None,
            created_time=parse_graph_time(item.get("created_time")),
            body=item.get("message"),
        )
    except (KeyError, ValueError):
        logger.warning("Skipping malformed message item: %s", item.get("id"))
        return None


async def fetch_conversations(
    client: GraphClient,
    page_id: str,
    access_token: str,
    platform: str = "messenger",
    since: Optional[datetime] = None,
) -> List[GraphConversation]:
    """List a page's conversations on ``platform``, optionally since a time."""
    params: Dict[str, Any] = {
        "access_token": access_token,
        "fields": ",".join(CONVERSATION_FIELDS),
        "limit": str(client.page_size),
        "platform": platform,
    }
    if since is not None:
        params["since"] = str(to_epoch_seconds(since))

    items = await client.paginate(client.url_for(f"/{page_id}/conversations"), params)
    conversations = [c for c in (_parse_conversation(i) for i in items) if c is not None]
    logger.info(
        "Fetched %d %s conversation(s) for page %s (since=%s)",
        len(conversations),
        platform,
        page_id,
        since.isoformat() if since else "full",
    )
    return conversations


async def fetch_conversation_messages(
    client: GraphClient,
    conversation_id: str,
    access_token: str,
) -> List[GraphMessage]:
    """Fetch every message of a conversation.

    Tries the embedded ``messages`` field expansion on the conversation
    node first; if the response carries no ``messages`` field, falls back
    to the dedicated ``/{conversation}/messages`` list endpoint.
    """
    fields = ",".join(MESSAGE_FIELDS)
    node = await client.get_json(
        client.url_for(f"/{conversation_id}"),
        {
            "access_token": access_token,
            "fields": f"messages.limit({client.page_size}){{{fields}}}",
        },
    )

    embedded = node.get("messages")
    if isinstance(embedded, dict):
        items = await client.collect_pages(embedded)
    else:
        logger.debug(
            "No embedded messages for conversation %s; using list endpoint",
            conversation_id,
        )
        items = await client.paginate(
            client.url_for(f"/{conversation_id}/messages"),
            {
                "access_token": access_token,
                "fields": fields,
                "limit": str(client.page_size),
            },
        )

    return [m for m in (_parse_message(i) for i in items) if m is not None]


async def fetch_page_name(
    client: GraphClient,
    page_id: str,
    access_token: str,
) -> str:
    """Resolve the display name of a page."""
    node = await client.get_json(
        client.url_for(f"/{page_id}"),
        {"access_token": access_token, "fields": ",".join(PAGE_NAME_FIELDS)},
    )
    name = node.get("name")
    if not name:
        raise PermanentAPIError(f"Page {page_id} response has no name")
    return str(name)


async def fetch_instagram_assets(
    client: GraphClient,
    page_id: str,
    access_token: str,
) -> List[IgAsset]:
    """List Instagram business accounts linked to a page."""
    items = await client.paginate(
        client.url_for(f"/{page_id}/instagram_accounts"),
        {"access_token": access_token, "fields": ",".join(IG_ACCOUNT_FIELDS)},
    )
    return [
        IgAsset(id=str(item["id"]), name=str(item.get("name") or "Instagram Business"))
        for item in items
        if item.get("id")
    ]
