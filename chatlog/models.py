"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For the backend-independent message record, see domain.py.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from chatlog.storage import Base


class MessageRecord(Base):
    """
    SQLAlchemy model for storing webhook messages.

    Table: messages
    Primary Key: seq (insertion order, breaks timestamp ties)
    Unique: message_id (ensures idempotency)
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, unique=True, nullable=False, index=True)
    meta_msg_id = Column(String, nullable=True, index=True)
    counterparty_id = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    message_type = Column(String, nullable=False, default="text")
    body = Column(Text, nullable=False)
    direction = Column(String, nullable=False)
    status = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)  # naive UTC
    status_updated_at = Column(DateTime, nullable=True)  # naive UTC
    phone_number_id = Column(String, nullable=True)
    display_phone_number = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)  # Server time

    __table_args__ = (
        Index("ix_messages_counterparty_ts", "counterparty_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<MessageRecord(message_id={self.message_id}, counterparty_id={self.counterparty_id})>"
