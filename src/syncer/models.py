"""
Domain records shared by the fetchers, aggregator, store and engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

PLATFORMS = ("messenger", "instagram")


class SenderType(str, Enum):
    CUSTOMER = "customer"
    BUSINESS = "business"


@dataclass(slots=True)
class PageRecord:
    """A connected page as stored locally.

    ``encrypted_access_token`` is opaque here; it is decrypted by
    :func:`shared.secrets.decrypt_token` just before a run.
    """

    id: str
    name: str
    encrypted_access_token: Optional[str] = None
    ig_business_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class GraphConversation:
    id: str
    updated_time: datetime


@dataclass(frozen=True, slots=True)
class GraphMessage:
    id: str
    sender_id: Optional[str]
    created_time: datetime
    body: Optional[str] = None


@dataclass(frozen=True, slots=True)
class IgAsset:
    id: str
    name: str


@dataclass(slots=True)
class ConversationRecord:
    id: str
    platform: str
    page_id: str
    ig_business_id: Optional[str]
    updated_time: datetime
    started_time: datetime
    last_message_at: datetime
    customer_count: int
    business_count: int
    price_given: bool


@dataclass(frozen=True, slots=True)
class MessageRecord:
    id: str
    conversation_id: str
    page_id: str
    sender_type: SenderType
    body: Optional[str]
    created_time: datetime
