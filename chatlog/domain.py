"""
Core records shared by the store, the aggregator and the pipeline.

Message is the atomic unit persisted by a MessageStore. Conversation is never
stored: it is derived from the messages of one counterparty on every read.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from chatlog.exceptions import ValidationError


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Statuses a message may be in for a transition to the key status to apply.
# read and failed are terminal; nothing moves back to sent.
FORWARD_FROM: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENT: frozenset(),
    MessageStatus.DELIVERED: frozenset({MessageStatus.SENT}),
    MessageStatus.READ: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED}),
    MessageStatus.FAILED: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED}),
}


def is_forward(current: MessageStatus, new: MessageStatus) -> bool:
    """Return True if moving from `current` to `new` respects sent -> delivered -> read."""
    return current in FORWARD_FROM[new]


class Message(BaseModel):
    """
    A single stored message.

    `message_id` is the platform identifier and the idempotency key.
    `meta_msg_id` is the correlation id status events may refer to instead.
    `seq` is assigned by the store on insert and breaks timestamp ties.
    """
    message_id: Optional[str] = None
    meta_msg_id: Optional[str] = None
    counterparty_id: Optional[str] = None
    display_name: str = ""
    message_type: MessageType = MessageType.TEXT
    body: Optional[str] = None
    direction: Direction = Direction.INCOMING
    status: MessageStatus = MessageStatus.SENT
    timestamp: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None

    # Channel metadata, opaque to the core
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None

    seq: Optional[int] = None

    @property
    def is_unread(self) -> bool:
        return self.direction == Direction.INCOMING and self.status != MessageStatus.READ


REQUIRED_FIELDS = ("message_id", "counterparty_id", "body", "timestamp")


def validate_required(message: Message) -> None:
    """Raise ValidationError if any field a stored message needs is missing."""
    missing = [
        name for name in REQUIRED_FIELDS
        if getattr(message, name) is None or getattr(message, name) == ""
    ]
    if missing:
        raise ValidationError(f"Message is missing required fields: {', '.join(missing)}")


def pick_status_target(candidates, candidate_ids):
    """
    Choose which matched message a status event applies to.

    A status event names both a message id and a meta id and either may match
    either column. A message whose own `message_id` is among the candidates wins
    over one matched only through `meta_msg_id`; insertion order breaks ties.
    Works on anything with `message_id` and `seq` attributes.
    """
    if not candidates:
        return None
    ids = set(candidate_ids)
    return min(
        candidates,
        key=lambda m: (0 if m.message_id in ids else 1, m.seq if m.seq is not None else 0),
    )


class Conversation(BaseModel):
    """Summary of every message exchanged with one counterparty."""
    counterparty_id: str
    display_name: str
    last_message_body: str
    last_message_time: datetime
    message_count: int = Field(..., ge=1)
    unread_count: int = Field(..., ge=0)
    phone_number: Optional[str] = None
