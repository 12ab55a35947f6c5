"""Tests for presence broadcasting."""

import pytest


class TestAnnounce:
    @pytest.mark.asyncio
    async def test_records_last_seen(self, courier):
        assert await courier.presence.last_seen("alice") is None

        await courier.presence.announce("alice", True)
        first = await courier.presence.last_seen("alice")
        await courier.presence.announce("alice", False)
        second = await courier.presence.last_seen("alice")

        assert first is not None
        assert second >= first

    @pytest.mark.asyncio
    async def test_one_event_per_conversation(self, courier, conversation, connect):
        with_bob = await conversation("alice", "bob")
        with_carol = await conversation("alice", "carol")
        bob = await connect("bob", with_bob["id"])
        carol = await connect("carol", with_carol["id"])

        count = await courier.presence.announce("alice", True)
        await courier.registry.flush()

        assert count == 2
        assert [e["conversationId"] for e in bob.events("presence")] == [with_bob["id"]]
        assert [e["conversationId"] for e in carol.events("presence")] == [with_carol["id"]]
        assert bob.events("presence")[0]["online"] is True
        assert bob.events("presence")[0]["identity"] == "alice"

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, courier, store):
        store.close()
        assert await courier.presence.announce("alice", True) == 0


class TestSessionTransitions:
    @pytest.mark.asyncio
    async def test_first_session_announces_online(self, courier, conversation, connect):
        conv = await conversation()
        bob = await connect("bob", conv["id"])

        await connect("alice")
        await courier.registry.flush()

        events = bob.events("presence")
        assert len(events) == 1
        assert events[0]["online"] is True

    @pytest.mark.asyncio
    async def test_second_session_is_silent(self, courier, conversation, connect):
        conv = await conversation()
        await connect("alice")
        bob = await connect("bob", conv["id"])

        await connect("alice")
        await courier.registry.flush()

        assert bob.events("presence") == []

    @pytest.mark.asyncio
    async def test_last_disconnect_emits_one_offline_event_per_conversation(
        self, courier, conversation, connect
    ):
        with_bob = await conversation("alice", "bob")
        with_carol = await conversation("alice", "carol")
        bob = await connect("bob", with_bob["id"])
        carol = await connect("carol", with_carol["id"])
        first = await connect("alice", with_bob["id"])
        second = await connect("alice", with_carol["id"])
        await courier.registry.flush()
        bob.received.clear()
        carol.received.clear()

        await courier.registry.disconnect(first.id)
        await courier.registry.flush()
        assert bob.events("presence") == []
        assert courier.registry.is_online("alice")

        await courier.registry.disconnect(second.id)
        await courier.registry.flush()

        assert not courier.registry.is_online("alice")
        for watcher, conv in ((bob, with_bob), (carol, with_carol)):
            offline = watcher.events("presence")
            assert len(offline) == 1
            assert offline[0]["online"] is False
            assert offline[0]["conversationId"] == conv["id"]
        assert await courier.presence.last_seen("alice") is not None
