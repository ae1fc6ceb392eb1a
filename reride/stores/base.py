"""
MODULE OVERVIEW:
The durable conversation store contract.

WHAT IS HAPPENING HERE:
Backends implement the CRUD and lookup primitives. The composite operations
the chat session relies on (`append_message`, `mark_read`, `flag`) are built
here once on top of `find_by_id` + `update`, serialized per conversation so
two appends in the same process never overwrite each other, and report their
outcome as a StoreResult instead of raising.

`append_message` is never an upsert: a missing conversation is reported with
`not_found=True` and nothing is created.
"""
import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any

from loguru import logger

from reride.shared.models import ChatMessage, Conversation, Role, StoreResult, utc_now_iso


class ConversationStore(ABC):
    name: str = "store"

    def __init__(self):
        self._locks: dict[str, list] = {}

    # ==========================
    # PRIMITIVES
    # ==========================
    @abstractmethod
    async def create(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def find_all(self) -> list[Conversation]:
        pass

    @abstractmethod
    async def find_by_customer(self, customer_id: str) -> list[Conversation]:
        pass

    @abstractmethod
    async def find_by_seller(self, seller_id: str) -> list[Conversation]:
        pass

    @abstractmethod
    async def find_by_vehicle_and_customer(self, vehicle_id: int, customer_id: str) -> Conversation | None:
        pass

    @abstractmethod
    async def update(self, conversation_id: str, updates: dict[str, Any]) -> None:
        """Apply `updates` (Conversation attribute names) to an existing conversation."""
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> None:
        pass

    async def close(self) -> None:
        pass

    # ==========================
    # COMPOSITES
    # ==========================
    @asynccontextmanager
    async def _locked(self, conversation_id: str):
        # [lock, holders]; dropped once nobody holds or waits on it
        entry = self._locks.setdefault(conversation_id, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[conversation_id]

    async def _load_for_update(self, conversation_id: str) -> Conversation | None:
        return await self.find_by_id(conversation_id)

    async def get_or_create(self, conversation: Conversation) -> Conversation:
        existing = await self.find_by_id(conversation.id)
        if existing is not None:
            return existing
        return await self.create(conversation)

    async def append_message(self, conversation_id: str, message: ChatMessage) -> StoreResult:
        async with self._locked(conversation_id):
            try:
                conversation = await self._load_for_update(conversation_id)
                if conversation is None:
                    return StoreResult(
                        success=False, not_found=True, error=f"Conversation not found: {conversation_id}"
                    )

                updates: dict[str, Any] = {
                    "messages": [*conversation.messages, message],
                    "last_message": message.text,
                    "last_message_at": message.timestamp,
                    "updated_at": utc_now_iso(),
                }
                if message.sender == "user":
                    updates["is_read_by_seller"] = False
                elif message.sender == "seller":
                    updates["is_read_by_customer"] = False

                await self.update(conversation_id, updates)
                return StoreResult(success=True, data=conversation.model_copy(update=updates))
            except Exception as e:
                logger.error(f"store={self.name} conversation_id={conversation_id} event=append_failed reason='{e}'")
                return StoreResult(success=False, error=str(e) or type(e).__name__)

    async def mark_read(self, conversation_id: str, reader_role: Role) -> StoreResult:
        """Mark every message from the other party as read and set the reader's read flag."""
        other_sender = "seller" if reader_role == "customer" else "user"
        async with self._locked(conversation_id):
            try:
                conversation = await self._load_for_update(conversation_id)
                if conversation is None:
                    return StoreResult(
                        success=False, not_found=True, error=f"Conversation not found: {conversation_id}"
                    )

                messages = [
                    m.model_copy(update={"is_read": True}) if m.sender == other_sender else m
                    for m in conversation.messages
                ]
                updates = {
                    "messages": messages,
                    f"is_read_by_{reader_role}": True,
                    "updated_at": utc_now_iso(),
                }
                await self.update(conversation_id, updates)
                return StoreResult(success=True, data=conversation.model_copy(update=updates))
            except Exception as e:
                logger.error(f"store={self.name} conversation_id={conversation_id} event=mark_read_failed reason='{e}'")
                return StoreResult(success=False, error=str(e) or type(e).__name__)

    async def flag(self, conversation_id: str, reason: str) -> StoreResult:
        async with self._locked(conversation_id):
            try:
                conversation = await self._load_for_update(conversation_id)
                if conversation is None:
                    return StoreResult(
                        success=False, not_found=True, error=f"Conversation not found: {conversation_id}"
                    )
                now = utc_now_iso()
                updates = {"is_flagged": True, "flag_reason": reason, "flagged_at": now, "updated_at": now}
                await self.update(conversation_id, updates)
                return StoreResult(success=True, data=conversation.model_copy(update=updates))
            except Exception as e:
                logger.error(f"store={self.name} conversation_id={conversation_id} event=flag_failed reason='{e}'")
                return StoreResult(success=False, error=str(e) or type(e).__name__)
