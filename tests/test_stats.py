"""
Tests for the /stats, health and metrics endpoints.
"""

import json

from conftest import message_payload, status_payload


def ingest(client, *payloads):
    response = client.post(
        "/webhook",
        content=json.dumps(list(payloads)),
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 200


class TestStats:

    def test_empty_database(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_messages": 0,
            "conversations_count": 0,
            "status_counts": {},
            "messages_per_conversation": [],
            "first_message_ts": None,
            "last_message_ts": None,
        }

    def test_counts(self, client):
        ingest(
            client,
            message_payload(message_id="m1", sender="111", timestamp="1736942400"),
            message_payload(message_id="m2", sender="111", timestamp="1736942460"),
            message_payload(message_id="m3", sender="222", timestamp="1736942520"),
            status_payload(message_id="m3", status="read"),
        )

        data = client.get("/stats").json()

        assert data["total_messages"] == 3
        assert data["conversations_count"] == 2
        assert data["status_counts"] == {"sent": 2, "read": 1}
        assert data["messages_per_conversation"] == [
            {"counterparty_id": "111", "count": 2},
            {"counterparty_id": "222", "count": 1},
        ]
        assert data["first_message_ts"] == "2025-01-15T12:00:00.000Z"
        assert data["last_message_ts"] == "2025-01-15T12:02:00.000Z"


class TestHealth:

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestMetrics:

    def test_ingestion_outcomes_exposed(self, client):
        ingest(client, message_payload())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'ingestion_events_total{result="created"}' in response.text
        assert "realtime_connected_viewers" in response.text
