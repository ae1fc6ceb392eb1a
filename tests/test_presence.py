"""Tests for the bounded presence cache and pending-message queues."""

from reride.chat.presence import PendingMessageQueues, PresenceCache
from reride.shared.models import ChatMessage, PresenceStatus


def msg(id_: int) -> ChatMessage:
    return ChatMessage(id=id_, sender="user", text=f"m{id_}")


class TestPresenceCache:
    """Tests for PresenceCache."""

    def test_apply_and_lookup(self):
        cache = PresenceCache()
        cache.apply(PresenceStatus(user_email="Bob@Example.com", user_role="seller", is_online=True))

        presence = cache.get("bob@example.com", "seller")
        assert presence.is_online is True
        assert presence.user_email == "bob@example.com"

    def test_lookup_returns_a_copy(self):
        cache = PresenceCache()
        cache.mark_online("a@x.com", "customer")
        cache.get("a@x.com", "customer").is_online = False
        assert cache.get("a@x.com", "customer").is_online is True

    def test_offline_keeps_previous_last_seen_when_missing(self):
        cache = PresenceCache()
        cache.mark_offline("a@x.com", "customer", "2024-01-01T00:00:00+00:00")
        cache.mark_online("a@x.com", "customer")
        presence = cache.mark_offline("a@x.com", "customer", None)
        assert presence.last_seen == "2024-01-01T00:00:00+00:00"

    def test_is_bounded(self):
        cache = PresenceCache(max_entries=2)
        for name in ("a", "b", "c"):
            cache.mark_online(f"{name}@x.com", "customer")

        assert len(cache) == 2
        assert cache.get("a@x.com", "customer") is None
        assert cache.get("c@x.com", "customer") is not None


class TestPendingMessageQueues:
    """Tests for PendingMessageQueues."""

    def test_drops_oldest_message_when_full(self):
        queues = PendingMessageQueues(max_per_conversation=2)
        for i in range(3):
            queues.push("c_1", msg(i))
        assert [m.id for m in queues.get("c_1")] == [1, 2]

    def test_drops_oldest_conversation_when_too_many(self):
        queues = PendingMessageQueues(max_conversations=2)
        for cid in ("c_1", "c_2", "c_3"):
            queues.push(cid, msg(1))
        assert len(queues) == 2
        assert queues.get("c_1") == []

    def test_remove_keeps_messages_queued_meanwhile(self):
        queues = PendingMessageQueues()
        for i in range(2):
            queues.push("c_1", msg(i))
        snapshot = queues.get("c_1")
        queues.push("c_1", msg(2))

        queues.remove("c_1", snapshot)
        assert [m.id for m in queues.get("c_1")] == [2]

        queues.remove("c_1", queues.get("c_1"))
        assert len(queues) == 0
        assert queues.total() == 0
