"""Tests for read-receipt tracking."""

import pytest

from courier.errors import AccessDenied, NotFound


async def _fill(courier, conversation_id, sender, count):
    return [
        await courier.coordinator.submit(conversation_id, sender, f"message {i}")
        for i in range(count)
    ]


class TestMarkRead:
    @pytest.mark.asyncio
    async def test_mark_all_unread(self, courier, conversation, store):
        conv = await conversation()
        sent = await _fill(courier, conv["id"], "alice", 5)

        marked = await courier.receipts.mark_read(conv["id"], "bob")

        assert marked == [m["id"] for m in sent]
        for message in sent:
            stored = store.find_by_id("messages", message["id"])
            assert list(stored["receipts"]) == ["bob"]
            assert stored["delivery_state"] == "read"

    @pytest.mark.asyncio
    async def test_idempotent_per_reader(self, courier, conversation, store):
        conv = await conversation()
        (message,) = await _fill(courier, conv["id"], "alice", 1)

        first = await courier.receipts.mark_read(conv["id"], "bob", [message["id"]])
        second = await courier.receipts.mark_read(conv["id"], "bob", [message["id"]])

        assert first == [message["id"]]
        assert second == []
        assert store.find_by_id("messages", message["id"])["receipts"].keys() == {"bob"}

    @pytest.mark.asyncio
    async def test_sender_reading_own_message_has_no_effect(self, courier, conversation, store):
        conv = await conversation()
        (message,) = await _fill(courier, conv["id"], "alice", 1)

        assert await courier.receipts.mark_read(conv["id"], "alice", [message["id"]]) == []
        assert await courier.receipts.mark_read(conv["id"], "alice") == []
        stored = store.find_by_id("messages", message["id"])
        assert stored["receipts"] == {}
        assert stored["delivery_state"] != "read"

    @pytest.mark.asyncio
    async def test_only_unread_from_other_party(self, courier, conversation):
        conv = await conversation()
        from_alice = await _fill(courier, conv["id"], "alice", 2)
        await _fill(courier, conv["id"], "bob", 2)
        await courier.receipts.mark_read(conv["id"], "bob", [from_alice[0]["id"]])

        marked = await courier.receipts.mark_read(conv["id"], "bob")

        assert marked == [from_alice[1]["id"]]

    @pytest.mark.asyncio
    async def test_foreign_ids_ignored(self, courier, conversation, store):
        ours = await conversation("alice", "bob")
        theirs = await conversation("alice", "carol")
        (foreign,) = await _fill(courier, theirs["id"], "alice", 1)

        marked = await courier.receipts.mark_read(ours["id"], "bob", [foreign["id"], "missing"])

        assert marked == []
        assert store.find_by_id("messages", foreign["id"])["receipts"] == {}

    @pytest.mark.asyncio
    async def test_non_member_denied(self, courier, conversation):
        conv = await conversation()
        with pytest.raises(AccessDenied):
            await courier.receipts.mark_read(conv["id"], "mallory")

    @pytest.mark.asyncio
    async def test_missing_conversation(self, courier):
        with pytest.raises(NotFound):
            await courier.receipts.mark_read("missing", "bob")


class TestReadEvents:
    @pytest.mark.asyncio
    async def test_one_event_per_newly_marked_message(self, courier, conversation, connect):
        conv = await conversation()
        sent = await _fill(courier, conv["id"], "alice", 3)
        alice = await connect("alice", conv["id"])
        bob = await connect("bob", conv["id"])

        await courier.receipts.mark_read(conv["id"], "bob", origin=bob.id)
        await courier.receipts.mark_read(conv["id"], "bob", origin=bob.id)
        await courier.registry.flush()

        events = alice.events("read")
        assert [e["messageId"] for e in events] == [m["id"] for m in sent]
        assert all(e["reader"] == "bob" and e["readAt"] for e in events)
        assert bob.events("read") == []

    @pytest.mark.asyncio
    async def test_read_wins_over_delivered(self, courier, conversation, connect, store):
        conv = await conversation()
        await connect("bob", conv["id"])
        message = await courier.coordinator.submit(conv["id"], "alice", "hi")
        await courier.receipts.mark_read(conv["id"], "bob", [message["id"]])

        await courier.coordinator.drain()

        assert store.find_by_id("messages", message["id"])["delivery_state"] == "read"
