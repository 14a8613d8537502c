"""
In-process MessageStore.

Backs the demo mode and the unit tests. Same contract as SqlMessageStore:
every write happens under one lock, every read returns copies so callers
never see later mutations.
"""

import itertools
import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

from chatlog.domain import (
    FORWARD_FROM,
    Message,
    MessageStatus,
    pick_status_target,
    validate_required,
)
from chatlog.storage import InsertResult
from chatlog.utils import ensure_utc

logger = logging.getLogger(__name__)


def _order_key(message: Message):
    return (message.timestamp, message.seq)


class InMemoryMessageStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._messages: dict[str, Message] = {}
        self._seq = itertools.count(1)

    def insert_if_absent(self, message: Message) -> InsertResult:
        validate_required(message)
        with self._lock:
            existing = self._messages.get(message.message_id)
            if existing is not None:
                logger.info(f"Duplicate message detected: {message.message_id}")
                return InsertResult(False, existing.model_copy())

            stored = message.model_copy(update={
                "seq": next(self._seq),
                "timestamp": ensure_utc(message.timestamp),
                "status_updated_at": ensure_utc(message.status_updated_at),
            })
            self._messages[stored.message_id] = stored
            return InsertResult(True, stored.model_copy())

    def update_status_by_identifier(
        self, candidate_ids: Iterable[str], new_status: MessageStatus, at: datetime
    ) -> bool:
        ids = {i for i in candidate_ids if i}
        new_status = MessageStatus(new_status)
        if not ids:
            return False

        with self._lock:
            matches = [
                m for m in self._messages.values()
                if m.message_id in ids or m.meta_msg_id in ids
            ]
            target = pick_status_target(matches, ids)
            if target is None or target.status not in FORWARD_FROM[new_status]:
                return False

            self._messages[target.message_id] = target.model_copy(
                update={"status": new_status, "status_updated_at": ensure_utc(at)}
            )
            return True

    def list_by_conversation(self, counterparty_id: str) -> list[Message]:
        with self._lock:
            found = [m.model_copy() for m in self._messages.values() if m.counterparty_id == counterparty_id]
        return sorted(found, key=_order_key)

    def mark_all_incoming_read(self, counterparty_id: str, at: datetime) -> int:
        count = 0
        with self._lock:
            for message_id, message in self._messages.items():
                if message.counterparty_id != counterparty_id or not message.is_unread:
                    continue
                self._messages[message_id] = message.model_copy(
                    update={"status": MessageStatus.READ, "status_updated_at": ensure_utc(at)}
                )
                count += 1
        return count

    def list_all(self) -> list[Message]:
        with self._lock:
            found = [m.model_copy() for m in self._messages.values()]
        return sorted(found, key=_order_key)

    def latest_in_conversation(self, counterparty_id: str) -> Optional[Message]:
        messages = self.list_by_conversation(counterparty_id)
        return messages[-1] if messages else None

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(m.status.value for m in self._messages.values()))

    def is_ready(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)