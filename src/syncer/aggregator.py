"""
Per-conversation aggregation of fetched messages.

Turns one conversation and the messages fetched for it in the current run
into the conversation record (counts, first/last activity, legacy price
flag) and the message records to persist.  Counts are always recomputed
from the messages passed in; nothing is merged with earlier runs.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from syncer.models import (
    ConversationRecord,
    GraphConversation,
    GraphMessage,
    MessageRecord,
    SenderType,
)

PRICE_MARKER = "$"


def classify_sender(sender_id: Optional[str], page_id: str) -> SenderType:
    if sender_id is not None and sender_id == page_id:
        return SenderType.BUSINESS
    return SenderType.CUSTOMER


def aggregate_conversation(
    conversation: GraphConversation,
    messages: Sequence[GraphMessage],
    page_id: str,
    platform: str,
    ig_business_id: Optional[str] = None,
) -> Tuple[ConversationRecord, List[MessageRecord]]:
    """Build the conversation and message records for one conversation.

    A message is ``business`` when its sender is the page; everything else
    is ``customer``.  ``ig_business_id`` is recorded as linkage only.  With
    no messages, start and last-activity times fall back to the
    conversation's own ``updated_time``.
    """
    customer_count = 0
    business_count = 0
    price_given = False
    started_time = None
    last_message_at = None
    records: List[MessageRecord] = []

    for msg in messages:
        sender_type = classify_sender(msg.sender_id, page_id)
        if sender_type is SenderType.BUSINESS:
            business_count += 1
            if not price_given and msg.body and PRICE_MARKER in msg.body:
                price_given = True
        else:
            customer_count += 1

        if started_time is None or msg.created_time < started_time:
            started_time = msg.created_time
        if last_message_at is None or msg.created_time > last_message_at:
            last_message_at = msg.created_time

        records.append(
            MessageRecord(
                id=msg.id,
                conversation_id=conversation.id,
                page_id=page_id,
                sender_type=sender_type,
                body=msg.body,
                created_time=msg.created_time,
            )
        )

    record = ConversationRecord(
        id=conversation.id,
        platform=platform,
        page_id=page_id,
        ig_business_id=ig_business_id,
        updated_time=conversation.updated_time,
        started_time=started_time or conversation.updated_time,
        last_message_at=last_message_at or conversation.updated_time,
        customer_count=customer_count,
        business_count=business_count,
        price_given=price_given,
    )
    return record, records

