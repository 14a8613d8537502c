"""
Realtime fan-out of message log changes to connected viewers.

Each connected viewer holds a set of conversation ids it has joined.
Conversation-scoped events (new-message, messages-read) go to the viewers
subscribed to that conversation; conversations-updated goes to everyone.
Delivery is fire-and-forget: nothing is queued for disconnected viewers.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Protocol, Union

from chatlog.metrics import record_realtime_event, set_connected_viewers
from chatlog.utils import to_iso, utc_now

logger = logging.getLogger(__name__)

NEW_MESSAGE = "new-message"
CONVERSATIONS_UPDATED = "conversations-updated"
MESSAGES_READ = "messages-read"


class Viewer(Protocol):
    """Anything that can receive a JSON event (a FastAPI WebSocket qualifies)."""

    async def send_json(self, data: Any) -> None: ...


@dataclass
class ViewerConnection:
    """A connected viewer and the conversations it has joined."""
    viewer: Viewer
    viewer_id: str
    subscriptions: set[str] = field(default_factory=set)


class RealtimeHub:
    """
    Owns viewer subscriptions and delivers events to them.

    Publishing is serialized by a lock, so a viewer receives the events of a
    conversation in the order they were published.
    """

    def __init__(self):
        self._connections: dict[str, ViewerConnection] = {}
        self._publish_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def connect(self, viewer: Viewer, viewer_id: Optional[str] = None) -> str:
        """Register a connected viewer and return its id."""
        viewer_id = viewer_id or uuid.uuid4().hex
        self._connections[viewer_id] = ViewerConnection(viewer=viewer, viewer_id=viewer_id)
        set_connected_viewers(len(self._connections))
        logger.info(f"Viewer connected: {viewer_id}")
        return viewer_id

    def disconnect(self, viewer_id: str) -> None:
        """Discard the viewer and its whole subscription set. Idempotent."""
        connection = self._connections.pop(viewer_id, None)
        set_connected_viewers(len(self._connections))
        if connection is not None:
            logger.info(
                f"Viewer disconnected: {viewer_id} "
                f"(was subscribed to {len(connection.subscriptions)} conversations)"
            )

    def subscribe(self, viewer_id: str, conversation_ids: Union[str, Iterable[str]]) -> set[str]:
        """
        Add one or several conversations to a viewer's subscriptions.

        Returns:
            The viewer's subscription set after the change (empty if unknown viewer)
        """
        connection = self._connections.get(viewer_id)
        if connection is None:
            logger.warning(f"Subscribe from unknown viewer {viewer_id}")
            return set()

        if isinstance(conversation_ids, str):
            conversation_ids = [conversation_ids]
        added = {cid for cid in conversation_ids if cid}
        connection.subscriptions.update(added)
        logger.info(f"Viewer {viewer_id} joined conversations: {', '.join(sorted(added))}")
        return set(connection.subscriptions)

    def unsubscribe(self, viewer_id: str, conversation_id: str) -> set[str]:
        connection = self._connections.get(viewer_id)
        if connection is None:
            return set()
        connection.subscriptions.discard(conversation_id)
        logger.info(f"Viewer {viewer_id} left conversation: {conversation_id}")
        return set(connection.subscriptions)

    def subscriptions(self, viewer_id: str) -> set[str]:
        connection = self._connections.get(viewer_id)
        return set(connection.subscriptions) if connection else set()

    def subscribers(self, conversation_id: str) -> list[str]:
        return [
            vid for vid, conn in self._connections.items()
            if conversation_id in conn.subscriptions
        ]

    @property
    def viewer_count(self) -> int:
        return len(self._connections)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish_new_message(self, conversation_id: str, message: dict) -> int:
        event = {
            "event": NEW_MESSAGE,
            "counterparty_id": conversation_id,
            "message": message,
            "timestamp": to_iso(utc_now()),
        }
        return await self._deliver(NEW_MESSAGE, event, conversation_id)

    async def publish_conversations_changed(self) -> int:
        event = {"event": CONVERSATIONS_UPDATED, "timestamp": to_iso(utc_now())}
        return await self._deliver(CONVERSATIONS_UPDATED, event, None)

    async def publish_messages_read(self, conversation_id: str) -> int:
        event = {
            "event": MESSAGES_READ,
            "counterparty_id": conversation_id,
            "timestamp": to_iso(utc_now()),
        }
        return await self._deliver(MESSAGES_READ, event, conversation_id)

    async def _deliver(self, name: str, event: dict, conversation_id: Optional[str]) -> int:
        """
        Send an event to every viewer in scope.

        Args:
            name: Event name, for metrics and logs
            event: JSON-serializable event body
            conversation_id: Restrict delivery to its subscribers; None means all viewers

        Returns:
            Number of viewers the event was delivered to
        """
        async with self._publish_lock:
            targets = [
                conn for conn in list(self._connections.values())
                if conversation_id is None or conversation_id in conn.subscriptions
            ]
            delivered = 0
            for conn in targets:
                try:
                    await conn.viewer.send_json(event)
                    delivered += 1
                except Exception as e:
                    # A dead socket must not stop delivery to the others
                    logger.warning(f"Failed to deliver {name} to viewer {conn.viewer_id}: {e}")
                    self.disconnect(conn.viewer_id)

        record_realtime_event(name, delivered)
        logger.debug(f"Published {name} to {delivered} viewers")
        return delivered
