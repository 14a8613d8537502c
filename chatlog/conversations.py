"""
Conversation aggregation over the message log.

Conversations are recomputed from the MessageStore on every call; nothing is
cached, so a read always reflects every write that returned before it.
"""

import logging
from typing import Optional

from chatlog.domain import Conversation, Message
from chatlog.exceptions import NotFoundError
from chatlog.storage import MessageStore
from chatlog.utils import to_iso

logger = logging.getLogger(__name__)


def summarize(counterparty_id: str, messages: list[Message]) -> Optional[Conversation]:
    """
    Build the summary of one conversation from its messages.

    Args:
        counterparty_id: Conversation key
        messages: Messages of that conversation, ascending by timestamp

    Returns:
        Conversation, or None if there are no messages
    """
    if not messages:
        return None

    last = messages[-1]
    return Conversation(
        counterparty_id=counterparty_id,
        display_name=last.display_name or counterparty_id,
        last_message_body=last.body,
        last_message_time=last.timestamp,
        message_count=len(messages),
        unread_count=sum(1 for m in messages if m.is_unread),
        phone_number=last.display_phone_number or counterparty_id,
    )


class ConversationAggregator:
    """Derives per-counterparty conversation summaries from a MessageStore."""

    def __init__(self, store: MessageStore):
        self.store = store

    def list_conversations(self) -> list[Conversation]:
        """
        Group every stored message by counterparty.

        Ordering: most recent last_message_time first.
        """
        groups: dict[str, list[Message]] = {}
        # list_all is ascending by (timestamp, seq) so each group stays ordered
        for message in self.store.list_all():
            groups.setdefault(message.counterparty_id, []).append(message)

        conversations = [summarize(cid, msgs) for cid, msgs in groups.items()]
        conversations.sort(key=lambda c: c.last_message_time, reverse=True)
        logger.debug(f"Aggregated {len(conversations)} conversations")
        return conversations

    def get_conversation_info(self, counterparty_id: str) -> Conversation:
        conversation = summarize(counterparty_id, self.store.list_by_conversation(counterparty_id))
        if conversation is None:
            raise NotFoundError(counterparty_id)
        return conversation

    def get_messages(self, counterparty_id: str) -> list[Message]:
        """Messages of one conversation, oldest first. Empty if unknown."""
        return self.store.list_by_conversation(counterparty_id)

    def get_stats(self) -> dict:
        """
        Message-level analytics for the /stats endpoint.

        Computes:
        - total_messages: count of all messages
        - conversations_count: number of distinct counterparties
        - status_counts: messages per status
        - messages_per_conversation: top 10 conversations by message count (desc)
        - first_message_ts / last_message_ts: null if no messages
        """
        messages = self.store.list_all()
        conversations = self.list_conversations()

        top = sorted(conversations, key=lambda c: (-c.message_count, c.counterparty_id))[:10]
        stats = {
            "total_messages": len(messages),
            "conversations_count": len(conversations),
            "status_counts": self.store.count_by_status(),
            "messages_per_conversation": [
                {"counterparty_id": c.counterparty_id, "count": c.message_count} for c in top
            ],
            "first_message_ts": to_iso(messages[0].timestamp) if messages else None,
            "last_message_ts": to_iso(messages[-1].timestamp) if messages else None,
        }
        logger.info(f"Stats computed: {stats['total_messages']} messages, {stats['conversations_count']} conversations")
        return stats
