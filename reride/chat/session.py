"""
MODULE OVERVIEW:
The realtime chat session: one per signed-in client.

WHAT IS HAPPENING HERE:
The session multiplexes a live channel (see `reride.chat.transport`) for
message delivery, typing indicators, read receipts and presence, while message
persistence always goes through the durable conversation store first.

The live channel is best effort. If it cannot be established the session
still reports itself connected in a degraded sense: `send_message` keeps
persisting messages and parks them in a per-conversation pending queue until
the channel comes back, at which point a sync pass replays them. A
`SendResult(success=True)` therefore means "durably recorded", never
"delivered live".

Connection state:

    disconnected -> connecting -> connected
    connected -> disconnected   (transport drop; the transport's bounded
                                 reconnect policy brings it back)

Inbound events are published on an EventBus under the topics "message",
"typing", "read", "presence", "delivery", "notification" and "connection",
so any number of listeners can coexist.
"""
import asyncio
import enum
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from loguru import logger
from pydantic import ValidationError

from reride.chat.presence import PendingMessageQueues, PresenceCache
from reride.chat.transport import Transport
from reride.shared.config import settings
from reride.shared.events import EventBus
from reride.shared.keys import normalize_email
from reride.shared.models import (
    ChatMessage,
    MessageDeliveryStatus,
    Notification,
    PresenceStatus,
    ReadReceipt,
    Role,
    SendResult,
    TypingStatus,
    UserPresence,
)
from reride.stores.base import ConversationStore

MAX_TRACKED_DELIVERIES = 1000
TERMINAL_DELIVERY_STATES = ("read", "failed")


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class DeliveryTracker:
    conversation_id: str
    message: ChatMessage
    on_status: Callable[[MessageDeliveryStatus], Any] | None = None
    status: str = "sent"


class RealtimeChatSession:
    def __init__(
        self,
        transport: Transport,
        store: ConversationStore,
        bus: EventBus | None = None,
        *,
        join_timeout_s: float | None = None,
        typing_expiry_s: float | None = None,
        max_reconnect_attempts: int | None = None,
        presence_max_entries: int | None = None,
        pending_max_per_conversation: int | None = None,
        pending_max_conversations: int | None = None,
    ):
        self.transport = transport
        self.store = store
        self.bus = bus or EventBus()
        self.join_timeout_s = join_timeout_s if join_timeout_s is not None else settings.CHAT_JOIN_TIMEOUT_S
        self.typing_expiry_s = typing_expiry_s if typing_expiry_s is not None else settings.CHAT_TYPING_EXPIRY_S
        self.max_reconnect_attempts = (
            max_reconnect_attempts if max_reconnect_attempts is not None else settings.CHAT_RECONNECT_ATTEMPTS
        )
        self.presence = PresenceCache(
            presence_max_entries if presence_max_entries is not None else settings.CHAT_PRESENCE_MAX_ENTRIES
        )
        self.pending = PendingMessageQueues(
            pending_max_per_conversation
            if pending_max_per_conversation is not None
            else settings.CHAT_PENDING_MAX_PER_CONVERSATION,
            pending_max_conversations
            if pending_max_conversations is not None
            else settings.CHAT_PENDING_MAX_CONVERSATIONS,
        )

        self.identity: str | None = None
        self.role: Role | None = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_task: asyncio.Task | None = None
        self._listeners_bound = False
        self._closing = False
        self._reconnect_attempts = 0
        self._rooms: set[str] = set()
        self._sync_lock = asyncio.Lock()
        self._join_gate = asyncio.Event()
        self._typing_tasks: dict[str, asyncio.Task] = {}
        self._deliveries: dict[str, DeliveryTracker] = {}

    # ==========================
    # CONNECTION
    # ==========================
    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self.transport.connected

    async def connect(self, identity: str, role: Role) -> bool:
        """
        Establish the live channel. Always returns True: a channel that cannot
        be opened leaves the session in degraded mode, not in an error state.
        Concurrent callers share the single attempt in progress.
        """
        if self.transport.connected:
            return True
        if self._connect_task is not None and not self._connect_task.done():
            logger.debug("component=chat_session event=connect reason='attempt already in progress'")
        else:
            self._connect_task = asyncio.create_task(self._establish(identity, role))

        attempt = self._connect_task
        try:
            return await asyncio.shield(attempt)
        except asyncio.CancelledError:
            caller = asyncio.current_task()
            if not attempt.cancelled() or (caller is not None and caller.cancelling()):
                raise
            logger.info("component=chat_session event=connect_abandoned reason='disconnect during connect'")
            return True

    async def _establish(self, identity: str, role: Role) -> bool:
        self.identity = normalize_email(identity)
        self.role = role
        self._closing = False
        self._state = ConnectionState.CONNECTING
        self._bind_listeners()

        try:
            await self.transport.connect(self.identity, role)
        except Exception as e:
            logger.warning(
                f"component=chat_session event=degraded transport={self.transport.name} "
                f"reason='{e}' note='messages are still persisted'"
            )
            if not self.transport.connected:
                self._state = ConnectionState.DISCONNECTED
            await self.bus.publish("connection", True)
            return True

        if self.transport.connected:
            self._state = ConnectionState.CONNECTED
        else:
            logger.info(
                f"component=chat_session event=pending transport={self.transport.name} "
                f"reason='live channel not open yet'"
            )
            self._state = ConnectionState.DISCONNECTED
            await self.bus.publish("connection", True)
        return True

    async def disconnect(self) -> None:
        """Tear the channel down and leave no timers, trackers or waiters behind."""
        self._closing = True

        typing_tasks = list(self._typing_tasks.values())
        self._typing_tasks.clear()
        for task in typing_tasks:
            task.cancel()
        if typing_tasks:
            await asyncio.gather(*typing_tasks, return_exceptions=True)

        self._deliveries.clear()
        self._rooms.clear()
        self._join_gate.set()
        self._join_gate = asyncio.Event()

        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
            await asyncio.gather(self._connect_task, return_exceptions=True)
        self._connect_task = None

        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning(f"component=chat_session event=disconnect_error reason='{e}'")

        self._state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        await self.bus.publish("connection", False)

    async def shutdown(self) -> None:
        await self.disconnect()

    # ==========================
    # INBOUND EVENTS
    # ==========================
    def _bind_listeners(self) -> None:
        if self._listeners_bound:
            return
        self._listeners_bound = True
        for event, handler in (
            ("connect", self._on_connect),
            ("disconnect", self._on_disconnect),
            ("connect_error", self._on_connect_error),
            ("conversation:new-message", self._on_new_message),
            ("conversation:typing", self._on_typing),
            ("conversation:read", self._on_read),
            ("message:status", self._on_message_status),
            ("user:presence", self._on_presence),
            ("user:online", self._on_user_online),
            ("user:offline", self._on_user_offline),
            ("notifications:created", self._on_notification),
        ):
            self.transport.on(event, handler)

    async def _on_connect(self, _data: Any = None) -> None:
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        logger.info(f"component=chat_session event=connected transport={self.transport.name} identity={self.identity}")
        await self.bus.publish("connection", True)

        for conversation_id in sorted(self._rooms):
            await self._emit_safely("conversation:join", {"conversationId": conversation_id})
        self._join_gate.set()

        await self.sync_pending_messages()

    async def _on_disconnect(self, _data: Any = None) -> None:
        if self._closing:
            return
        self._state = ConnectionState.DISCONNECTED
        if self._join_gate.is_set():
            self._join_gate = asyncio.Event()
        logger.info(f"component=chat_session event=disconnected transport={self.transport.name}")
        await self.bus.publish("connection", False)

    async def _on_connect_error(self, data: Any = None) -> None:
        self._reconnect_attempts += 1
        logger.warning(
            f"component=chat_session event=connect_error attempt={self._reconnect_attempts} reason='{data}'"
        )
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            await self.bus.publish("connection", False)

    async def _on_new_message(self, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("conversationId") or not data.get("message"):
            return
        try:
            message = ChatMessage.model_validate(data["message"])
        except ValidationError as e:
            logger.warning(f"event=conversation:new-message reason='invalid message: {e.error_count()} errors'")
            return
        await self.bus.publish("message", data["conversationId"], message, data.get("conversation"))

    async def _on_typing(self, data: Any) -> None:
        status = self._parse(TypingStatus, data, "conversation:typing")
        if status is not None:
            await self.bus.publish("typing", status)

    async def _on_read(self, data: Any) -> None:
        receipt = self._parse(ReadReceipt, data, "conversation:read")
        if receipt is not None:
            await self.bus.publish("read", receipt)

    async def _on_message_status(self, data: Any) -> None:
        status = self._parse(MessageDeliveryStatus, data, "message:status")
        if status is None:
            return

        key = str(status.message_id)
        tracker = self._deliveries.get(key)
        if tracker is not None:
            tracker.status = status.status
            if status.status == "failed":
                logger.error(
                    f"conversation_id={tracker.conversation_id} message_id={key} event=delivery_failed "
                    f"reason='queued for replay'"
                )
                self.pending.push(tracker.conversation_id, tracker.message)
            if status.status in TERMINAL_DELIVERY_STATES:
                del self._deliveries[key]
            if tracker.on_status is not None:
                await self._call(tracker.on_status, status)
        await self.bus.publish("delivery", status)

    async def _on_presence(self, data: Any) -> None:
        status = self._parse(PresenceStatus, data, "user:presence")
        if status is None:
            return
        self.presence.apply(status)
        await self.bus.publish("presence", status)

    async def _on_user_online(self, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("userEmail") or not data.get("userRole"):
            return
        presence = self.presence.mark_online(data["userEmail"], data["userRole"])
        await self.bus.publish("presence", PresenceStatus(**presence.model_dump()))

    async def _on_user_offline(self, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("userEmail") or not data.get("userRole"):
            return
        presence = self.presence.mark_offline(data["userEmail"], data["userRole"], data.get("lastSeen"))
        await self.bus.publish("presence", PresenceStatus(**presence.model_dump()))

    async def _on_notification(self, data: Any) -> None:
        if not isinstance(data, dict) or not data.get("notification"):
            return
        notification = self._parse(Notification, data["notification"], "notifications:created")
        if notification is not None:
            await self.bus.publish("notification", notification)

    # ==========================
    # OUTBOUND
    # ==========================
    async def send_message(
        self,
        conversation_id: str,
        message: ChatMessage,
        identity: str,
        role: Role,
        on_status: Callable[[MessageDeliveryStatus], Any] | None = None,
    ) -> SendResult:
        """
        Persist `message`, then deliver it live if the channel is open or park
        it in the pending queue if not. Never raises.
        """
        try:
            email = normalize_email(identity)
            if self.transport.connected and conversation_id not in self._rooms:
                await self.join_conversation(conversation_id)

            outgoing = message.model_copy(update={"status": "sending"})
            saved = await self.store.append_message(conversation_id, outgoing)
            if not saved.success:
                if saved.not_found:
                    logger.error(
                        f"conversation_id={conversation_id} message_id={message.id} event=persist_failed "
                        f"reason=not_found"
                    )
                else:
                    logger.error(
                        f"conversation_id={conversation_id} message_id={message.id} event=persist_failed "
                        f"reason='{saved.error}'"
                    )

            if self.transport.connected:
                delivered = await self._emit_message(conversation_id, outgoing, email, role)
                if delivered:
                    self._track_delivery(conversation_id, outgoing, on_status)
                elif saved.success:
                    self.pending.push(conversation_id, outgoing)
            elif saved.success:
                logger.warning(
                    f"conversation_id={conversation_id} message_id={message.id} event=queued "
                    f"reason='live channel not connected'"
                )
                self.pending.push(conversation_id, outgoing)

            if not saved.success:
                return SendResult(success=False, error=saved.error or "Failed to save message")
            return SendResult(success=True)
        except Exception as e:
            logger.error(f"conversation_id={conversation_id} event=send_error reason='{e}'")
            return SendResult(success=False, error=str(e) or "Unknown error")

    async def _emit_message(self, conversation_id: str, message: ChatMessage, email: str | None, role: Role | None) -> bool:
        sent = message.model_copy(update={"status": "sent"})
        return await self._emit_safely(
            "conversation:message",
            {"conversationId": conversation_id, "message": sent.wire(), "userEmail": email, "userRole": role},
        )

    def _track_delivery(self, conversation_id: str, message: ChatMessage, on_status) -> None:
        self._deliveries[str(message.id)] = DeliveryTracker(conversation_id, message, on_status)
        while len(self._deliveries) > MAX_TRACKED_DELIVERIES:
            oldest = next(iter(self._deliveries))
            del self._deliveries[oldest]

    async def sync_pending_messages(self) -> int:
        """
        Replay parked messages over the live channel. A conversation whose
        replay fails part way keeps the messages that were not sent.
        Passes run one at a time; a pass started during another replays
        only what is still pending once the first finishes.
        Returns how many messages were replayed.
        """
        async with self._sync_lock:
            return await self._replay_pending()

    async def _replay_pending(self) -> int:
        if not self.transport.connected:
            return 0

        replayed = 0
        for conversation_id, messages in self.pending.items():
            sent = []
            for message in messages:
                if not await self._emit_message(conversation_id, message, self.identity, self.role):
                    break
                self._track_delivery(conversation_id, message, None)
                sent.append(message)
            self.pending.remove(conversation_id, sent)
            replayed += len(sent)

        if replayed:
            logger.info(f"component=chat_session event=pending_synced count={replayed}")
        return replayed

    async def join_conversation(self, conversation_id: str) -> None:
        """
        Subscribe to a conversation's events. When the channel is not open yet
        the join is remembered and sent on connect; the caller waits at most
        `join_timeout_s` for that and then returns without error.
        """
        self._rooms.add(conversation_id)
        if self.transport.connected:
            await self._emit_safely("conversation:join", {"conversationId": conversation_id})
            return

        gate = self._join_gate
        try:
            await asyncio.wait_for(gate.wait(), timeout=self.join_timeout_s)
        except asyncio.TimeoutError:
            logger.debug(f"conversation_id={conversation_id} event=join_deferred reason='channel not connected'")

    async def join_all_conversations(self, conversation_ids: Iterable[str]) -> None:
        for conversation_id in conversation_ids:
            await self.join_conversation(conversation_id)

    async def leave_conversation(self, conversation_id: str) -> None:
        self._rooms.discard(conversation_id)
        if self.transport.connected:
            await self._emit_safely("conversation:leave", {"conversationId": conversation_id})

    async def send_typing_indicator(self, conversation_id: str, role: Role, is_typing: bool) -> None:
        if not self.transport.connected:
            return

        key = f"{conversation_id}-{role}"
        existing = self._typing_tasks.pop(key, None)
        if existing is not None:
            existing.cancel()

        await self._emit_safely(
            "conversation:typing",
            TypingStatus(conversation_id=conversation_id, user_role=role, is_typing=is_typing).wire(),
        )
        if is_typing:
            self._typing_tasks[key] = asyncio.create_task(self._expire_typing(key, conversation_id, role))

    async def _expire_typing(self, key: str, conversation_id: str, role: Role) -> None:
        await asyncio.sleep(self.typing_expiry_s)
        if self._typing_tasks.get(key) is asyncio.current_task():
            del self._typing_tasks[key]
        if self.transport.connected:
            await self._emit_safely(
                "conversation:typing",
                TypingStatus(conversation_id=conversation_id, user_role=role, is_typing=False).wire(),
            )

    async def mark_as_read(self, conversation_id: str, message_ids: list[int | str], role: Role) -> None:
        if not self.transport.connected:
            return
        await self._emit_safely(
            "conversation:mark-read",
            {"conversationId": conversation_id, "messageIds": list(message_ids), "readBy": role},
        )

    # ==========================
    # LOOKUPS AND SUBSCRIPTIONS
    # ==========================
    def get_user_presence(self, identity: str, role: Role) -> UserPresence | None:
        return self.presence.get(identity, role)

    def get_pending_messages(self, conversation_id: str) -> list[ChatMessage]:
        return self.pending.get(conversation_id)

    def joined_conversations(self) -> set[str]:
        return set(self._rooms)

    def on_message(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("message", handler)

    def on_typing(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("typing", handler)

    def on_connection(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("connection", handler)

    def on_read(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("read", handler)

    def on_presence(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("presence", handler)

    def on_delivery(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("delivery", handler)

    def on_notification(self, handler) -> Callable[[], None]:
        return self.bus.subscribe("notification", handler)

    # ==========================
    # HELPERS
    # ==========================
    async def _emit_safely(self, event: str, payload: dict[str, Any]) -> bool:
        try:
            await self.transport.emit(event, payload)
            return True
        except Exception as e:
            logger.warning(f"component=chat_session event=emit_failed name={event} reason='{e}'")
            return False

    @staticmethod
    def _parse(model, data: Any, event: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"event={event} reason='invalid payload: {e.error_count()} errors'")
            return None

    @staticmethod
    async def _call(callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"component=chat_session event=callback_error reason='{e}'")
