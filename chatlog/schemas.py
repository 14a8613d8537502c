"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models (the messaging platform's nested envelope)
- Request models for the conversation API
- Response models for API responses
"""

from typing import Annotated, Any, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from chatlog.domain import Conversation, Message, MessageStatus, MessageType
from chatlog.utils import from_epoch_seconds, to_iso


# =============================================================================
# Webhook Payload Models
# =============================================================================

def _check_epoch_seconds(value: int) -> int:
    """Reject platform timestamps that do not convert to a datetime (e.g. milliseconds)."""
    try:
        from_epoch_seconds(value)
    except (OverflowError, OSError, ValueError) as e:
        raise ValueError(f"timestamp {value} is out of range for seconds since epoch") from e
    return value


EpochSeconds = Annotated[int, AfterValidator(_check_epoch_seconds)]


class WebhookModel(BaseModel):
    """Base for payload models: unknown platform fields are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TextContent(WebhookModel):
    body: str = ""


class MediaContent(WebhookModel):
    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class InboundMessage(WebhookModel):
    """One item of `value.messages`."""
    id: str = Field(..., min_length=1)
    # 'from' is a reserved word in Python, so we use alias
    from_id: str = Field(..., alias="from", min_length=1)
    timestamp: EpochSeconds = Field(..., description="Seconds since epoch")
    type: MessageType = MessageType.TEXT
    text: Optional[TextContent] = None
    image: Optional[MediaContent] = None
    document: Optional[MediaContent] = None
    audio: Optional[MediaContent] = None
    video: Optional[MediaContent] = None

    def body_text(self) -> str:
        """Text for the message log: the text body, or a media caption or placeholder."""
        if self.type == MessageType.TEXT:
            return self.text.body if self.text else ""
        media = getattr(self, self.type.value)
        if media is not None and media.caption:
            return media.caption
        return f"[{self.type.value}]"


class ContactProfile(WebhookModel):
    name: str = ""


class Contact(WebhookModel):
    wa_id: Optional[str] = None
    profile: ContactProfile = Field(default_factory=ContactProfile)


class ChannelMetadata(WebhookModel):
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class StatusUpdate(WebhookModel):
    """One item of `value.statuses`."""
    id: str = Field(..., min_length=1)
    meta_msg_id: Optional[str] = None
    status: MessageStatus
    timestamp: EpochSeconds = Field(..., description="Seconds since epoch")
    recipient_id: Optional[str] = None


class ChangeValue(WebhookModel):
    messaging_product: Optional[str] = None
    metadata: ChannelMetadata = Field(default_factory=ChannelMetadata)
    contacts: list[Contact] = Field(default_factory=list)
    messages: list[InboundMessage] = Field(default_factory=list)
    statuses: list[StatusUpdate] = Field(default_factory=list)

    def display_name_for(self, sender_id: str) -> str:
        """Contact name of the sender, falling back to the first contact, then the id."""
        for contact in self.contacts:
            if contact.wa_id == sender_id and contact.profile.name:
                return contact.profile.name
        if self.contacts and self.contacts[0].profile.name:
            return self.contacts[0].profile.name
        return sender_id


class Change(WebhookModel):
    field: Optional[str] = None
    value: ChangeValue


class Entry(WebhookModel):
    id: Optional[str] = None
    changes: list[Change]


class EnvelopeMetaData(WebhookModel):
    entry: list[Entry]


class WebhookPayload(WebhookModel):
    """
    A webhook payload, either wrapped as
    {"payload_type": ..., "metaData": {"entry": [...]}} or bare {"object": ..., "entry": [...]}.
    """
    payload_type: Optional[str] = None
    meta_data: Optional[EnvelopeMetaData] = Field(None, alias="metaData")
    entry: Optional[list[Entry]] = None

    @model_validator(mode="after")
    def require_entries(self) -> "WebhookPayload":
        if self.meta_data is None and self.entry is None:
            raise ValueError("payload has neither 'metaData.entry' nor 'entry'")
        return self

    def values(self) -> list[ChangeValue]:
        entries = self.meta_data.entry if self.meta_data is not None else self.entry
        return [change.value for entry in entries for change in entry.changes]


# =============================================================================
# Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """Body of POST /api/conversations/{id}/messages."""
    body: Optional[str] = Field(None, max_length=4096, description="Message text")

    model_config = {
        "json_schema_extra": {"examples": [{"body": "Hello! How can we help?"}]}
    }


# =============================================================================
# Response Models
# =============================================================================

class MessageResponse(BaseModel):
    """A message as shown in a conversation view."""
    message_id: str = Field(..., description="Platform message identifier")
    body: str = Field(..., description="Message content")
    message_type: MessageType = Field(..., description="text, image, document, audio or video")
    direction: str = Field(..., description="incoming or outgoing")
    status: str = Field(..., description="sent, delivered, read or failed")
    timestamp: str = Field(..., description="Message timestamp (ISO-8601 UTC)")
    display_name: str = Field(..., description="Counterparty name at time of message")

    @classmethod
    def from_domain(cls, message: Message) -> "MessageResponse":
        return cls(
            message_id=message.message_id,
            body=message.body,
            message_type=message.message_type,
            direction=message.direction.value,
            status=message.status.value,
            timestamp=to_iso(message.timestamp),
            display_name=message.display_name,
        )


class ConversationResponse(BaseModel):
    """A row of the conversation list."""
    counterparty_id: str
    display_name: str
    last_message: str
    last_message_time: str
    message_count: int = Field(..., ge=1)
    unread_count: int = Field(..., ge=0)

    @classmethod
    def from_domain(cls, conversation: Conversation) -> "ConversationResponse":
        return cls(
            counterparty_id=conversation.counterparty_id,
            display_name=conversation.display_name,
            last_message=conversation.last_message_body,
            last_message_time=to_iso(conversation.last_message_time),
            message_count=conversation.message_count,
            unread_count=conversation.unread_count,
        )


class ConversationInfoResponse(BaseModel):
    id: str
    display_name: str
    phone_number: str


class SendMessageResponse(BaseModel):
    success: bool = True
    message: MessageResponse


class MarkReadResponse(BaseModel):
    success: bool = True
    updated: int = Field(..., ge=0, description="Messages transitioned to read")


class WebhookResponse(BaseModel):
    """Response for webhook ingestion; per-event failures are counted, never raised."""
    status: str = Field(default="ok", description="Operation status")
    received: int = 0
    created: int = 0
    duplicates: int = 0
    status_updated: int = 0
    status_ignored: int = 0
    malformed: int = 0
    invalid: int = 0


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ConversationCount(BaseModel):
    counterparty_id: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.

    - total_messages: total count of all messages
    - conversations_count: number of distinct counterparties
    - status_counts: messages per status
    - messages_per_conversation: top 10 conversations by message count
    - first_message_ts / last_message_ts: null if no messages
    """
    total_messages: int = Field(..., ge=0)
    conversations_count: int = Field(..., ge=0)
    status_counts: dict[str, int] = Field(default_factory=dict)
    messages_per_conversation: list[ConversationCount] = Field(default_factory=list)
    first_message_ts: Optional[str] = None
    last_message_ts: Optional[str] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Realtime Control Messages
# =============================================================================

class ControlMessage(BaseModel):
    """A join/leave frame sent by a viewer over the websocket."""
    action: str
    conversation_id: Optional[str] = None
    conversation_ids: list[str] = Field(default_factory=list)

    def targets(self) -> list[str]:
        ids = list(self.conversation_ids)
        if self.conversation_id:
            ids.append(self.conversation_id)
        return ids


def as_event_payload(message: Message) -> dict[str, Any]:
    """JSON-ready projection of a message for realtime events."""
    return MessageResponse.from_domain(message).model_dump(mode="json")
