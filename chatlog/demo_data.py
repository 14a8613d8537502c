"""
Demo conversations for trying the viewer without a webhook source.

Seeded only into an empty store, so restarting with SEED_DEMO_DATA=true never
duplicates anything (inserts are idempotent anyway).
"""

import logging
from datetime import datetime, timezone

from chatlog.domain import Direction, Message, MessageStatus
from chatlog.storage import MessageStore

logger = logging.getLogger(__name__)

BUSINESS_PHONE_NUMBER_ID = "629305560276479"
BUSINESS_DISPLAY_NUMBER = "918329446654"


def _at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2025, 1, 15, hour, minute, second, tzinfo=timezone.utc)


# (message_id, counterparty_id, display_name, body, direction, status, timestamp)
DEMO_MESSAGES = [
    ("demo_msg_1", "919937320320", "Ravi Kumar",
     "Hi, I'd like to know more about your services.",
     Direction.INCOMING, MessageStatus.READ, _at(12, 0)),
    ("demo_msg_2", "919937320320", "Ravi Kumar",
     "Thank you for your interest! We offer comprehensive digital marketing solutions.",
     Direction.OUTGOING, MessageStatus.READ, _at(12, 5)),
    ("demo_msg_3", "929967673820", "Neha Joshi",
     "Hi, I saw your ad. Can you share more details?",
     Direction.INCOMING, MessageStatus.DELIVERED, _at(12, 16, 40)),
    ("demo_msg_4", "929967673820", "Neha Joshi",
     "Hello Neha! I'd be happy to share more details about our services.",
     Direction.OUTGOING, MessageStatus.SENT, _at(12, 20)),
    ("demo_msg_5", "918765432109", "Amit Sharma",
     "Good morning! I need help with my website.",
     Direction.INCOMING, MessageStatus.READ, _at(9, 30)),
    ("demo_msg_6", "918765432109", "Amit Sharma",
     "Good morning Amit! I'd be happy to help you with your website. What specific assistance do you need?",
     Direction.OUTGOING, MessageStatus.READ, _at(9, 35)),
]


def seed_demo_data(store: MessageStore) -> int:
    """Insert the demo messages if the store holds no messages. Returns how many were inserted."""
    if store.list_all():
        logger.info("Store already has messages, skipping demo seed")
        return 0

    inserted = 0
    for message_id, counterparty_id, name, body, direction, status, ts in DEMO_MESSAGES:
        result = store.insert_if_absent(Message(
            message_id=message_id,
            meta_msg_id=message_id,
            counterparty_id=counterparty_id,
            display_name=name,
            body=body,
            direction=direction,
            status=status,
            timestamp=ts,
            status_updated_at=ts,
            phone_number_id=BUSINESS_PHONE_NUMBER_ID,
            display_phone_number=BUSINESS_DISPLAY_NUMBER,
        ))
        inserted += int(result.inserted)

    logger.info(f"Seeded {inserted} demo messages")
    return inserted
