"""
Ingestion pipeline: turns webhook payloads and user actions into store writes
and realtime events.

Entry points:
- ingest_batch / ingest: webhook payloads carrying message and status events
- send_message: user-initiated outgoing message
- mark_read: user opened a conversation
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from chatlog.domain import Direction, Message, MessageStatus, MessageType
from chatlog.exceptions import MalformedPayloadError, NotFoundError, ValidationError
from chatlog.logging_utils import conversation_context
from chatlog.metrics import record_ingestion_outcome
from chatlog.realtime import RealtimeHub
from chatlog.schemas import ChangeValue, InboundMessage, StatusUpdate, WebhookPayload, as_event_payload
from chatlog.storage import MessageStore
from chatlog.utils import from_epoch_seconds, generate_message_id, utc_now

logger = logging.getLogger(__name__)


@dataclass
class IngestionReport:
    """Per-batch outcome counters."""
    received: int = 0
    created: int = 0
    duplicates: int = 0
    status_updated: int = 0
    status_ignored: int = 0
    malformed: int = 0
    invalid: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def parse_payload(payload: Any) -> WebhookPayload:
    """
    Validate the nested webhook envelope.

    Raises:
        MalformedPayloadError: if the payload is not a dict or misses expected fields
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError(f"payload must be an object, got {type(payload).__name__}")
    try:
        return WebhookPayload.model_validate(payload)
    except PydanticValidationError as e:
        raise MalformedPayloadError(str(e)) from e


class IngestionPipeline:
    """
    Applies inbound events to a MessageStore and notifies a RealtimeHub.

    The hub is optional so the bulk loader can reuse the pipeline offline.
    Storage failures propagate so the caller can retry; everything else that
    is wrong with a single payload is logged and counted.
    """

    def __init__(self, store: MessageStore, hub: Optional[RealtimeHub] = None):
        self.store = store
        self.hub = hub

    # -------------------------------------------------------------------------
    # Webhook ingestion
    # -------------------------------------------------------------------------

    async def ingest_batch(self, payloads: Iterable[Any]) -> IngestionReport:
        """Process every payload; one bad payload never aborts the others."""
        report = IngestionReport()
        for index, payload in enumerate(payloads):
            report.received += 1
            try:
                await self.ingest(payload, report)
            except MalformedPayloadError as e:
                report.malformed += 1
                record_ingestion_outcome("malformed")
                logger.warning(f"Skipping malformed payload #{index}: {e}")

        logger.info(f"Batch ingested: {report.as_dict()}")
        return report

    async def ingest(self, payload: Any, report: Optional[IngestionReport] = None) -> IngestionReport:
        report = report if report is not None else IngestionReport()
        parsed = parse_payload(payload)

        for value in parsed.values():
            for event in value.messages:
                with conversation_context(event.from_id):
                    await self.handle_message_event(event, value, report)
            for event in value.statuses:
                await self.handle_status_event(event, report)
        return report

    async def handle_message_event(
        self,
        event: InboundMessage,
        value: ChangeValue,
        report: Optional[IngestionReport] = None,
    ) -> Optional[Message]:
        """
        Store an inbound message.

        Returns:
            The stored message if it was new, None for duplicates and invalid events
        """
        report = report if report is not None else IngestionReport()
        message = Message(
            message_id=event.id,
            meta_msg_id=event.id,
            counterparty_id=event.from_id,
            display_name=value.display_name_for(event.from_id),
            message_type=event.type,
            body=event.body_text(),
            direction=Direction.INCOMING,
            status=MessageStatus.SENT,
            timestamp=from_epoch_seconds(event.timestamp),
            phone_number_id=value.metadata.phone_number_id,
            display_phone_number=value.metadata.display_phone_number,
        )

        try:
            result = self.store.insert_if_absent(message)
        except ValidationError as e:
            report.invalid += 1
            record_ingestion_outcome("invalid")
            logger.warning(f"Rejected message {event.id}: {e}")
            return None

        if not result.inserted:
            report.duplicates += 1
            record_ingestion_outcome("duplicate")
            logger.info(f"Message already exists: {event.id}")
            return None

        report.created += 1
        record_ingestion_outcome("created")
        logger.info(f"Stored message {event.id} from {message.counterparty_id}")

        await self._publish_new_message(result.stored)
        return result.stored

    async def handle_status_event(
        self, event: StatusUpdate, report: Optional[IngestionReport] = None
    ) -> bool:
        """Apply a status change; an unmatched or backward status is a no-op."""
        report = report if report is not None else IngestionReport()
        updated = self.store.update_status_by_identifier(
            {event.id, event.meta_msg_id},
            event.status,
            from_epoch_seconds(event.timestamp),
        )

        if not updated:
            report.status_ignored += 1
            record_ingestion_outcome("status_ignored")
            logger.info(f"No forward status change '{event.status.value}' for message: {event.id}")
            return False

        report.status_updated += 1
        record_ingestion_outcome("status_updated")
        logger.info(f"Updated message status to '{event.status.value}' for message: {event.id}")

        if self.hub is not None:
            await self.hub.publish_conversations_changed()
        return True

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def send_message(self, counterparty_id: str, body: Optional[str]) -> Message:
        """
        Create an outgoing message in an existing conversation.

        Display name and channel metadata come from the conversation's most
        recent message.

        Raises:
            ValidationError: body is missing or whitespace only
            NotFoundError: no message exists for counterparty_id
        """
        if body is None or not body.strip():
            raise ValidationError("Message body is required")

        latest = self.store.latest_in_conversation(counterparty_id)
        if latest is None:
            raise NotFoundError(counterparty_id)

        message_id = generate_message_id()
        now = utc_now()
        message = Message(
            message_id=message_id,
            meta_msg_id=message_id,
            counterparty_id=counterparty_id,
            display_name=latest.display_name,
            message_type=MessageType.TEXT,
            body=body.strip(),
            direction=Direction.OUTGOING,
            status=MessageStatus.SENT,
            timestamp=now,
            status_updated_at=now,
            phone_number_id=latest.phone_number_id,
            display_phone_number=latest.display_phone_number,
        )
        result = self.store.insert_if_absent(message)
        logger.info(f"Outgoing message {message_id} created for {counterparty_id}")

        await self._publish_new_message(result.stored)
        return result.stored

    async def mark_read(self, counterparty_id: str) -> int:
        """Mark every incoming message of a conversation read; returns how many changed."""
        count = self.store.mark_all_incoming_read(counterparty_id, utc_now())
        logger.info(f"Marked {count} messages read for {counterparty_id}")

        if count > 0 and self.hub is not None:
            await self.hub.publish_messages_read(counterparty_id)
            await self.hub.publish_conversations_changed()
        return count

    async def _publish_new_message(self, message: Message) -> None:
        if self.hub is None:
            return
        await self.hub.publish_new_message(message.counterparty_id, as_event_payload(message))
        await self.hub.publish_conversations_changed()
