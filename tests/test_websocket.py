"""
Tests for the /ws realtime endpoint.
"""

import json

import pytest

from conftest import message_payload


@pytest.fixture
def seeded_client(client):
    client.post(
        "/webhook",
        content=json.dumps([
            message_payload(message_id="a1", sender="111", timestamp="1736942400"),
            message_payload(message_id="b1", sender="222", timestamp="1736942460"),
        ]),
        headers={"Content-Type": "application/json"},
    )
    return client


def join(ws, *conversation_ids):
    ws.send_json({"action": "join", "conversation_ids": list(conversation_ids)})
    return ws.receive_json()


class TestRealtimeEndpoint:

    def test_join_and_leave_acknowledged(self, seeded_client):
        with seeded_client.websocket_connect("/ws") as ws:
            assert join(ws, "111", "222") == {"event": "subscriptions", "conversation_ids": ["111", "222"]}

            ws.send_json({"action": "leave", "conversation_id": "111"})
            assert ws.receive_json() == {"event": "subscriptions", "conversation_ids": ["222"]}

    def test_new_message_reaches_subscriber(self, seeded_client):
        with seeded_client.websocket_connect("/ws") as ws:
            join(ws, "111")

            response = seeded_client.post("/api/conversations/111/messages", json={"body": "hi"})
            assert response.status_code == 201

            event = ws.receive_json()
            assert event["event"] == "new-message"
            assert event["counterparty_id"] == "111"
            assert event["message"]["body"] == "hi"
            assert ws.receive_json()["event"] == "conversations-updated"

    def test_other_conversation_only_sees_list_update(self, seeded_client):
        with seeded_client.websocket_connect("/ws") as ws:
            join(ws, "222")

            seeded_client.post("/api/conversations/111/messages", json={"body": "hi"})
            seeded_client.put("/api/conversations/222/mark-read")

            # Events for 111 are scoped away; the list update and 222's read event arrive in order
            assert ws.receive_json()["event"] == "conversations-updated"
            read_event = ws.receive_json()
            assert read_event["event"] == "messages-read"
            assert read_event["counterparty_id"] == "222"
            assert ws.receive_json()["event"] == "conversations-updated"

    def test_invalid_frame_ignored(self, seeded_client):
        with seeded_client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            ws.send_json({"action": "dance"})

            assert join(ws, "111") == {"event": "subscriptions", "conversation_ids": ["111"]}
