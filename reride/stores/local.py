"""
The development fallback store: conversations held in memory, optionally
mirrored to a JSON file so a restart keeps them.
"""
import json
import os
from pathlib import Path
from typing import Any

from loguru import logger

from reride.shared.errors import ConversationNotFoundError, StoreError
from reride.shared.models import Conversation
from reride.stores.base import ConversationStore


class LocalConversationStore(ConversationStore):
    name = "local"

    def __init__(self, path: str | Path | None = None):
        super().__init__()
        self.path = Path(path) if path else None
        self._conversations: dict[str, Conversation] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read {self.path}: {e}") from e
        for item in raw:
            conversation = Conversation.model_validate(item)
            self._conversations[conversation.id] = conversation
        logger.info(f"store=local event=loaded count={len(self._conversations)} path={self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = [c.wire() for c in self._conversations.values()]
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    async def create(self, conversation: Conversation) -> Conversation:
        if conversation.id in self._conversations:
            raise StoreError(f"Conversation already exists: {conversation.id}", status=409)
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        self._save()
        return conversation.model_copy(deep=True)

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation is not None else None

    async def find_all(self) -> list[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values()]

    async def find_by_customer(self, customer_id: str) -> list[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values() if c.customer_id == customer_id]

    async def find_by_seller(self, seller_id: str) -> list[Conversation]:
        return [c.model_copy(deep=True) for c in self._conversations.values() if c.seller_id == seller_id]

    async def find_by_vehicle_and_customer(self, vehicle_id: int, customer_id: str) -> Conversation | None:
        for conversation in self._conversations.values():
            if conversation.vehicle_id == vehicle_id and conversation.customer_id == customer_id:
                return conversation.model_copy(deep=True)
        return None

    async def update(self, conversation_id: str, updates: dict[str, Any]) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        unknown = [k for k in updates if k not in Conversation.model_fields]
        if unknown:
            raise ValueError(f"Unknown conversation field: {unknown[0]}")
        merged = {**conversation.model_dump(), **{k: v for k, v in updates.items() if k != "id"}}
        self._conversations[conversation_id] = Conversation.model_validate(merged)
        self._save()

    async def delete(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is not None:
            self._save()
