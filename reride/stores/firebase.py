"""
The document backend, spoken to over the realtime-database REST API.

Document keys cannot contain `. # $ [ ]`, so conversation ids are turned
into keys with `email_to_key`; the real id is kept inside the document.
"""
import json
from typing import Any

import httpx

from reride.queueing.request_queue import RequestQueue
from reride.shared.errors import ConversationNotFoundError
from reride.shared.keys import email_to_key
from reride.shared.models import Conversation
from reride.stores.http import WRITE_PRIORITY, HttpConversationStore
from reride.stores.mappers import conversation_to_document, document_to_conversation, updates_to_document

COLLECTION = "conversations"


def _all(documents: Any) -> list[Conversation]:
    if not documents:
        return []
    return [document_to_conversation(doc, key) for key, doc in documents.items() if doc]


class FirebaseConversationStore(HttpConversationStore):
    name = "firebase"

    def __init__(
        self,
        database_url: str,
        queue: RequestQueue,
        auth_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        **cache_options,
    ):
        super().__init__(database_url, queue, client=client, **cache_options)
        self.auth_token = auth_token

    def _path(self, conversation_id: str | None = None) -> str:
        if conversation_id is None:
            return f"/{COLLECTION}.json"
        return f"/{COLLECTION}/{email_to_key(conversation_id)}.json"

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = dict(extra)
        if self.auth_token:
            params["auth"] = self.auth_token
        return params

    async def create(self, conversation: Conversation) -> Conversation:
        await self._request(
            "PUT",
            self._path(conversation.id),
            params=self._params(),
            json=conversation_to_document(conversation),
            priority=WRITE_PRIORITY,
        )
        self._invalidate(conversation.id)
        return conversation

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        return await self._cached_read(
            f"conversation:{conversation_id}",
            self._path(conversation_id),
            self._params(),
            lambda doc: document_to_conversation(doc, conversation_id) if doc else None,
        )

    async def _load_for_update(self, conversation_id: str) -> Conversation | None:
        doc = await self._request("GET", self._path(conversation_id), params=self._params())
        return document_to_conversation(doc, conversation_id) if doc else None

    async def find_all(self) -> list[Conversation]:
        return await self._cached_read("query:all", self._path(), self._params(), _all)

    async def _query(self, field: str, value: Any) -> list[Conversation]:
        return await self._cached_read(
            f"query:{field}:{value}",
            self._path(),
            self._params(orderBy=json.dumps(field), equalTo=json.dumps(value)),
            _all,
        )

    async def find_by_customer(self, customer_id: str) -> list[Conversation]:
        return await self._query("customerId", customer_id)

    async def find_by_seller(self, seller_id: str) -> list[Conversation]:
        return await self._query("sellerId", seller_id)

    async def find_by_vehicle_and_customer(self, vehicle_id: int, customer_id: str) -> Conversation | None:
        for conversation in await self._query("vehicleId", vehicle_id):
            if conversation.customer_id == customer_id:
                return conversation
        return None

    async def update(self, conversation_id: str, updates: dict[str, Any]) -> None:
        # PATCH on a missing path would create a partial document
        if await self._load_for_update(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        await self._request(
            "PATCH",
            self._path(conversation_id),
            params=self._params(),
            json=updates_to_document(updates),
            priority=WRITE_PRIORITY,
        )
        self._invalidate(conversation_id)

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", self._path(conversation_id), params=self._params(), priority=WRITE_PRIORITY)
        self._invalidate(conversation_id)
