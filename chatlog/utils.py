"""
Utility functions for the message log.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Current server time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(seconds: int) -> datetime:
    """Convert a platform timestamp (seconds since epoch) to an aware UTC datetime."""
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes; they are stored as UTC so the
    timezone is re-attached rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO-8601 UTC with a Z suffix."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def generate_message_id() -> str:
    """Fresh identifier for a message created by this server."""
    message_id = f"local.{uuid.uuid4().hex}"
    logger.debug(f"Generated message id {message_id}")
    return message_id
