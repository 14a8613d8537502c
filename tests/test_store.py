"""
Tests for the MessageStore contract, run against both backends.

Tests cover:
- Idempotent insert and required-field validation
- Ordering within a conversation (timestamp, then insertion order)
- Forward-only status transitions and identifier matching
- Marking a conversation read
- Concurrent inserts and status updates of the same message id
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from chatlog.domain import Direction, Message, MessageStatus
from chatlog.exceptions import ValidationError

T0 = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_message(message_id, counterparty_id="123", minutes=0, **fields):
    data = dict(
        message_id=message_id,
        meta_msg_id=message_id,
        counterparty_id=counterparty_id,
        display_name="Test User",
        body=f"body of {message_id}",
        timestamp=T0 + timedelta(minutes=minutes),
    )
    data.update(fields)
    return Message(**data)


class TestInsertIfAbsent:
    """Idempotent insert."""

    def test_insert_new_message(self, store):
        result = store.insert_if_absent(make_message("m1"))

        assert result.inserted is True
        assert result.stored.message_id == "m1"
        assert result.stored.status == MessageStatus.SENT
        assert result.stored.timestamp == T0

    def test_duplicate_insert_is_noop(self, store):
        store.insert_if_absent(make_message("m1", body="first"))
        result = store.insert_if_absent(make_message("m1", body="second"))

        assert result.inserted is False
        assert result.stored.body == "first"
        assert len(store.list_all()) == 1

    @pytest.mark.parametrize("field", ["message_id", "counterparty_id", "body", "timestamp"])
    def test_missing_required_field_rejected(self, store, field):
        message = make_message("m1").model_copy(update={field: None})

        with pytest.raises(ValidationError):
            store.insert_if_absent(message)
        assert store.list_all() == []

    def test_empty_body_rejected(self, store):
        with pytest.raises(ValidationError):
            store.insert_if_absent(make_message("m1", body=""))

    def test_concurrent_inserts_single_winner(self, store):
        """At most one of many concurrent inserts of the same id wins."""
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.insert_if_absent(make_message("same")), range(8)))

        assert sum(r.inserted for r in results) == 1
        assert len(store.list_all()) == 1


class TestListByConversation:
    """Ordered retrieval."""

    def test_ordered_by_timestamp(self, store):
        store.insert_if_absent(make_message("late", minutes=10))
        store.insert_if_absent(make_message("early", minutes=1))
        store.insert_if_absent(make_message("middle", minutes=5))

        ids = [m.message_id for m in store.list_by_conversation("123")]
        assert ids == ["early", "middle", "late"]

    def test_timestamp_ties_keep_insertion_order(self, store):
        for message_id in ["b", "a", "c"]:
            store.insert_if_absent(make_message(message_id, minutes=0))

        ids = [m.message_id for m in store.list_by_conversation("123")]
        assert ids == ["b", "a", "c"]

    def test_only_requested_conversation(self, store):
        store.insert_if_absent(make_message("m1", counterparty_id="A"))
        store.insert_if_absent(make_message("m2", counterparty_id="B"))

        messages = store.list_by_conversation("A")
        assert [m.message_id for m in messages] == ["m1"]

    def test_unknown_conversation_empty(self, store):
        assert store.list_by_conversation("nobody") == []

    def test_latest_in_conversation(self, store):
        store.insert_if_absent(make_message("m1", minutes=3))
        store.insert_if_absent(make_message("m2", minutes=1))

        assert store.latest_in_conversation("123").message_id == "m1"
        assert store.latest_in_conversation("nobody") is None


class TestUpdateStatus:
    """Forward-only status transitions."""

    def test_forward_transition_applies(self, store):
        store.insert_if_absent(make_message("m1"))
        at = T0 + timedelta(minutes=1)

        assert store.update_status_by_identifier({"m1"}, MessageStatus.DELIVERED, at) is True

        message = store.list_by_conversation("123")[0]
        assert message.status == MessageStatus.DELIVERED
        assert message.status_updated_at == at

    def test_sent_after_read_stays_read(self, store):
        store.insert_if_absent(make_message("m1"))
        store.update_status_by_identifier({"m1"}, MessageStatus.READ, T0)

        assert store.update_status_by_identifier({"m1"}, MessageStatus.SENT, T0) is False
        assert store.update_status_by_identifier({"m1"}, MessageStatus.DELIVERED, T0) is False
        assert store.list_by_conversation("123")[0].status == MessageStatus.READ

    def test_failed_is_terminal(self, store):
        store.insert_if_absent(make_message("m1", direction=Direction.OUTGOING))
        store.update_status_by_identifier({"m1"}, MessageStatus.FAILED, T0)

        assert store.update_status_by_identifier({"m1"}, MessageStatus.READ, T0) is False
        assert store.list_by_conversation("123")[0].status == MessageStatus.FAILED

    def test_same_status_is_noop(self, store):
        store.insert_if_absent(make_message("m1"))

        assert store.update_status_by_identifier({"m1"}, MessageStatus.SENT, T0) is False

    def test_no_match(self, store):
        store.insert_if_absent(make_message("m1"))

        assert store.update_status_by_identifier({"other"}, MessageStatus.READ, T0) is False
        assert store.update_status_by_identifier(set(), MessageStatus.READ, T0) is False

    def test_matches_meta_msg_id(self, store):
        store.insert_if_absent(make_message("m1", meta_msg_id="meta-1"))

        assert store.update_status_by_identifier({"unknown", "meta-1"}, MessageStatus.DELIVERED, T0) is True
        assert store.list_by_conversation("123")[0].status == MessageStatus.DELIVERED

    def test_colliding_identifiers_update_one_message(self, store):
        """
        A status naming 'x' matches m1 by message_id and m2 by meta_msg_id.
        Only the message_id match is updated.
        """
        store.insert_if_absent(make_message("m2", meta_msg_id="x", minutes=0))
        store.insert_if_absent(make_message("x", meta_msg_id="x-meta", minutes=1))

        assert store.update_status_by_identifier({"x"}, MessageStatus.DELIVERED, T0) is True

        statuses = {m.message_id: m.status for m in store.list_all()}
        assert statuses == {"m2": MessageStatus.SENT, "x": MessageStatus.DELIVERED}

    def test_concurrent_updates_apply_each_transition_once(self, store):
        """Racing delivered and read updates never move the status backward."""
        store.insert_if_absent(make_message("m1"))
        targets = [MessageStatus.DELIVERED, MessageStatus.READ] * 4

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda status: (status, store.update_status_by_identifier({"m1"}, status, T0)),
                targets,
            ))

        applied = [status for status, updated in results if updated]
        assert applied.count(MessageStatus.READ) == 1
        assert applied.count(MessageStatus.DELIVERED) <= 1
        assert store.list_by_conversation("123")[0].status == MessageStatus.READ


class TestMarkAllIncomingRead:
    """Read-state transitions."""

    def test_marks_incoming_only(self, store):
        store.insert_if_absent(make_message("in1", minutes=0))
        store.insert_if_absent(make_message("in2", minutes=1, status=MessageStatus.DELIVERED))
        store.insert_if_absent(make_message("out1", minutes=2, direction=Direction.OUTGOING))
        at = T0 + timedelta(hours=1)

        assert store.mark_all_incoming_read("123", at) == 2

        by_id = {m.message_id: m for m in store.list_by_conversation("123")}
        assert by_id["in1"].status == MessageStatus.READ
        assert by_id["in1"].status_updated_at == at
        assert by_id["in2"].status == MessageStatus.READ
        assert by_id["out1"].status == MessageStatus.SENT

    def test_idempotent(self, store):
        store.insert_if_absent(make_message("in1"))

        assert store.mark_all_incoming_read("123", T0) == 1
        assert store.mark_all_incoming_read("123", T0) == 0

    def test_other_conversations_untouched(self, store):
        store.insert_if_absent(make_message("a1", counterparty_id="A"))
        store.insert_if_absent(make_message("b1", counterparty_id="B"))

        store.mark_all_incoming_read("A", T0)

        assert store.list_by_conversation("B")[0].status == MessageStatus.SENT


class TestCountByStatus:

    def test_counts(self, store):
        store.insert_if_absent(make_message("m1"))
        store.insert_if_absent(make_message("m2", status=MessageStatus.READ))
        store.insert_if_absent(make_message("m3", status=MessageStatus.READ))

        assert store.count_by_status() == {"sent": 1, "read": 2}

    def test_ready(self, store):
        assert store.is_ready() is True
