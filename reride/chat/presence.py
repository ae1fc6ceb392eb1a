"""
MODULE OVERVIEW:
Bounded in-memory containers owned by one chat session: the presence cache and
the per-conversation pending-message queues.

WHAT IS HAPPENING HERE:
Both are capped. Presence entries are evicted least-recently-updated first;
pending queues drop their oldest message when full and the oldest conversation
when too many conversations are waiting. Every drop is logged so lost live
deliveries are visible (the messages themselves are already persisted).
"""
from collections import OrderedDict, deque

from loguru import logger

from reride.shared.keys import normalize_email, presence_key
from reride.shared.models import ChatMessage, PresenceStatus, Role, UserPresence


class PresenceCache:
    def __init__(self, max_entries: int = 1000):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, UserPresence] = OrderedDict()

    def get(self, email: str, role: Role) -> UserPresence | None:
        presence = self._entries.get(presence_key(email, role))
        return presence.model_copy() if presence is not None else None

    def apply(self, status: PresenceStatus) -> UserPresence:
        presence = UserPresence(
            user_email=normalize_email(status.user_email),
            user_role=status.user_role,
            is_online=status.is_online,
            last_seen=status.last_seen,
        )
        self._store(presence)
        return presence

    def mark_online(self, email: str, role: Role) -> UserPresence:
        presence = self._entries.get(presence_key(email, role)) or UserPresence(
            user_email=normalize_email(email), user_role=role, is_online=True
        )
        presence = presence.model_copy(update={"is_online": True})
        self._store(presence)
        return presence

    def mark_offline(self, email: str, role: Role, last_seen: str | None) -> UserPresence:
        presence = self._entries.get(presence_key(email, role)) or UserPresence(
            user_email=normalize_email(email), user_role=role, is_online=False
        )
        presence = presence.model_copy(update={"is_online": False, "last_seen": last_seen or presence.last_seen})
        self._store(presence)
        return presence

    def _store(self, presence: UserPresence) -> None:
        key = presence_key(presence.user_email, presence.user_role)
        self._entries[key] = presence
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"component=presence event=evict key={evicted}")

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class PendingMessageQueues:
    def __init__(self, max_per_conversation: int = 100, max_conversations: int = 500):
        self.max_per_conversation = max_per_conversation
        self.max_conversations = max_conversations
        self._queues: OrderedDict[str, deque[ChatMessage]] = OrderedDict()

    def push(self, conversation_id: str, message: ChatMessage) -> None:
        queue = self._queues.get(conversation_id)
        if queue is None:
            queue = deque()
            self._queues[conversation_id] = queue
            while len(self._queues) > self.max_conversations:
                dropped_id, dropped = self._queues.popitem(last=False)
                logger.warning(
                    f"conversation_id={dropped_id} event=pending_dropped count={len(dropped)} "
                    f"reason=too_many_conversations"
                )
        if len(queue) >= self.max_per_conversation:
            dropped_message = queue.popleft()
            logger.warning(
                f"conversation_id={conversation_id} message_id={dropped_message.id} "
                f"event=pending_dropped reason=queue_full"
            )
        queue.append(message)

    def get(self, conversation_id: str) -> list[ChatMessage]:
        return list(self._queues.get(conversation_id, ()))

    def items(self) -> list[tuple[str, list[ChatMessage]]]:
        return [(cid, list(queue)) for cid, queue in self._queues.items()]

    def remove(self, conversation_id: str, messages: list[ChatMessage]) -> None:
        """Remove exactly these message objects; anything queued meanwhile stays."""
        queue = self._queues.get(conversation_id)
        if queue is None:
            return
        sent = {id(m) for m in messages}
        kept = deque(m for m in queue if id(m) not in sent)
        if kept:
            self._queues[conversation_id] = kept
        else:
            del self._queues[conversation_id]

    def clear(self) -> None:
        self._queues.clear()

    def total(self) -> int:
        return sum(len(q) for q in self._queues.values())

    def __len__(self) -> int:
        return len(self._queues)
