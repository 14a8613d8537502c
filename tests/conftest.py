"""
Pytest configuration and shared fixtures.

Environment variables are set before any chatlog import so settings, the
engine and the app are built against the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatlog.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("STORE_BACKEND", "sql")
os.environ.setdefault("SEED_DEMO_DATA", "false")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatlog.config import get_settings
get_settings.cache_clear()

from chatlog.memory_store import InMemoryMessageStore
from chatlog.storage import Base, SessionLocal, SqlMessageStore, engine
import chatlog.models  # noqa: F401  (registers tables on Base.metadata)


class FakeViewer:
    """Records every event the hub sends it."""

    def __init__(self, fail: bool = False):
        self.events = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.events.append(data)

    def names(self):
        return [e["event"] for e in self.events]


def message_payload(
    message_id="wamid.m1",
    sender="123",
    name="Test User",
    body="hello",
    timestamp="1736942400",
    wrapped=True,
    **message_fields,
):
    """Build a webhook payload carrying one text message."""
    message = {
        "from": sender,
        "id": message_id,
        "timestamp": timestamp,
        "type": "text",
        "text": {"body": body},
    }
    message.update(message_fields)
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "918329446654", "phone_number_id": "629305560276479"},
        "contacts": [{"profile": {"name": name}, "wa_id": sender}],
        "messages": [message],
    }
    entry = [{"id": "30164062719905277", "changes": [{"field": "messages", "value": value}]}]
    if wrapped:
        return {"payload_type": "whatsapp_webhook", "metaData": {"entry": entry}}
    return {"object": "whatsapp_business_account", "entry": entry}


def status_payload(message_id="wamid.m1", meta_msg_id=None, status="delivered", timestamp="1736942500"):
    """Build a webhook payload carrying one status change."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "918329446654", "phone_number_id": "629305560276479"},
        "statuses": [{
            "id": message_id,
            "meta_msg_id": meta_msg_id or message_id,
            "status": status,
            "timestamp": timestamp,
            "recipient_id": "123",
        }],
    }
    return {
        "payload_type": "whatsapp_webhook",
        "metaData": {"entry": [{"changes": [{"field": "messages", "value": value}]}]},
    }


@pytest.fixture
def memory_store():
    return InMemoryMessageStore()


@pytest.fixture
def sql_store():
    """SQL store on a fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield SqlMessageStore(SessionLocal)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Every store contract test runs against both backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def client():
    """Create test client with fresh database for each test."""
    from fastapi.testclient import TestClient

    from chatlog.main import app

    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)
