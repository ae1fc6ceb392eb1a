"""
MODULE OVERVIEW:
The composition root.

WHAT IS HAPPENING HERE:
One RequestQueue per process, one conversation store on top of it, and one
chat session per signed-in client, all built from `Settings`. `Services` owns
their lifetimes: `shutdown()` tears down in reverse order (session, then
store, then queue) so nothing is left running.
"""
from loguru import logger

from reride.chat.session import RealtimeChatSession
from reride.chat.transport import Transport, build_transport
from reride.queueing.request_queue import RequestQueue
from reride.shared.config import Settings, settings
from reride.shared.events import EventBus
from reride.stores.base import ConversationStore
from reride.stores.factory import build_store


class Services:
    def __init__(
        self,
        config: Settings | None = None,
        queue: RequestQueue | None = None,
        store: ConversationStore | None = None,
        transport: Transport | None = None,
    ):
        self.config = config or settings
        self.queue = queue or RequestQueue(
            concurrency=self.config.QUEUE_CONCURRENCY,
            max_retries=self.config.QUEUE_MAX_RETRIES,
            base_backoff_s=self.config.QUEUE_BASE_BACKOFF_S,
            max_backoff_s=self.config.QUEUE_MAX_BACKOFF_S,
            request_interval_s=self.config.QUEUE_REQUEST_INTERVAL_S,
            timeout_s=self.config.QUEUE_REQUEST_TIMEOUT_S,
        )
        self.store = store or build_store(self.config, self.queue)
        self.session = RealtimeChatSession(
            transport or build_transport(self.config),
            self.store,
            EventBus(),
            join_timeout_s=self.config.CHAT_JOIN_TIMEOUT_S,
            typing_expiry_s=self.config.CHAT_TYPING_EXPIRY_S,
            max_reconnect_attempts=self.config.CHAT_RECONNECT_ATTEMPTS,
            presence_max_entries=self.config.CHAT_PRESENCE_MAX_ENTRIES,
            pending_max_per_conversation=self.config.CHAT_PENDING_MAX_PER_CONVERSATION,
            pending_max_conversations=self.config.CHAT_PENDING_MAX_CONVERSATIONS,
        )

    async def start(self) -> None:
        await self.queue.start()
        logger.info(
            f"component=services event=started store={self.store.name} transport={self.session.transport.name}"
        )

    async def shutdown(self) -> None:
        await self.session.disconnect()
        await self.store.close()
        await self.queue.shutdown()
        logger.info("component=services event=stopped")

    async def __aenter__(self) -> "Services":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
