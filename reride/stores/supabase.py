"""The relational backend, spoken to over its PostgREST HTTP API."""
from typing import Any

import httpx

from reride.queueing.request_queue import RequestQueue
from reride.shared.errors import ConversationNotFoundError
from reride.shared.models import Conversation
from reride.stores.http import WRITE_PRIORITY, HttpConversationStore
from reride.stores.mappers import conversation_to_row, row_to_conversation, updates_to_row

TABLE_PATH = "/rest/v1/conversations"
RETURN_ROWS = {"Prefer": "return=representation"}


def _first(rows: Any) -> Conversation | None:
    return row_to_conversation(rows[0]) if rows else None


def _all(rows: Any) -> list[Conversation]:
    return [row_to_conversation(row) for row in rows or []]


class SupabaseConversationStore(HttpConversationStore):
    name = "supabase"

    def __init__(self, url: str, key: str, queue: RequestQueue, client: httpx.AsyncClient | None = None, **cache_options):
        super().__init__(
            url,
            queue,
            client=client,
            headers={"apikey": key, "Authorization": f"Bearer {key}"},
            **cache_options,
        )

    async def create(self, conversation: Conversation) -> Conversation:
        rows = await self._request(
            "POST", TABLE_PATH, json=conversation_to_row(conversation), headers=RETURN_ROWS, priority=WRITE_PRIORITY
        )
        self._invalidate(conversation.id)
        return _first(rows) or conversation

    async def find_by_id(self, conversation_id: str) -> Conversation | None:
        return await self._cached_read(
            f"conversation:{conversation_id}",
            TABLE_PATH,
            {"select": "*", "id": f"eq.{conversation_id}"},
            _first,
        )

    async def _load_for_update(self, conversation_id: str) -> Conversation | None:
        rows = await self._request("GET", TABLE_PATH, params={"select": "*", "id": f"eq.{conversation_id}"})
        return _first(rows)

    async def find_all(self) -> list[Conversation]:
        return await self._cached_read("query:all", TABLE_PATH, {"select": "*"}, _all)

    async def find_by_customer(self, customer_id: str) -> list[Conversation]:
        return await self._cached_read(
            f"query:customer:{customer_id}", TABLE_PATH, {"select": "*", "customer_id": f"eq.{customer_id}"}, _all
        )

    async def find_by_seller(self, seller_id: str) -> list[Conversation]:
        return await self._cached_read(
            f"query:seller:{seller_id}", TABLE_PATH, {"select": "*", "seller_id": f"eq.{seller_id}"}, _all
        )

    async def find_by_vehicle_and_customer(self, vehicle_id: int, customer_id: str) -> Conversation | None:
        return await self._cached_read(
            f"query:vehicle:{vehicle_id}:{customer_id}",
            TABLE_PATH,
            {"select": "*", "vehicle_id": f"eq.{vehicle_id}", "customer_id": f"eq.{customer_id}", "limit": 1},
            _first,
        )

    async def update(self, conversation_id: str, updates: dict[str, Any]) -> None:
        rows = await self._request(
            "PATCH",
            TABLE_PATH,
            params={"id": f"eq.{conversation_id}"},
            json=updates_to_row(updates),
            headers=RETURN_ROWS,
            priority=WRITE_PRIORITY,
        )
        self._invalidate(conversation_id)
        if not rows:
            raise ConversationNotFoundError(conversation_id)

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", TABLE_PATH, params={"id": f"eq.{conversation_id}"}, priority=WRITE_PRIORITY)
        self._invalidate(conversation_id)
