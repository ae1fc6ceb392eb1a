"""
MODULE OVERVIEW:
Shared plumbing for the hosted conversation stores.

WHAT IS HAPPENING HERE:
Every HTTP call is wrapped in an action and handed to the process-wide
RequestQueue, which serializes it, retries transient failures with backoff
and surfaces 429/503 immediately. Identical reads in flight at the same time
are collapsed through the queue's id dedup.

Reads go through a small TTL cache. Any write drops the cached entry for the
conversation plus every cached query, so a process always reads its own
writes. Read-modify-write composites bypass the cache entirely.
"""
from typing import Any, Callable

import httpx
from loguru import logger

from reride.queueing.request_queue import RequestQueue
from reride.shared.cache import TTLCache
from reride.shared.config import settings
from reride.shared.models import Conversation
from reride.stores.base import ConversationStore

READ_PRIORITY = 0
WRITE_PRIORITY = 1


def _copy(value: Any) -> Any:
    if isinstance(value, Conversation):
        return value.model_copy(deep=True)
    if isinstance(value, list):
        return [_copy(v) for v in value]
    return value


class HttpConversationStore(ConversationStore):
    def __init__(
        self,
        base_url: str,
        queue: RequestQueue,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        cache_ttl_s: float | None = None,
        cache_max_entries: int | None = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.queue = queue
        self.headers = headers or {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=settings.QUEUE_REQUEST_TIMEOUT_S)
        self.cache: TTLCache[Any] = TTLCache(
            cache_ttl_s if cache_ttl_s is not None else settings.STORE_CACHE_TTL_S,
            cache_max_entries if cache_max_entries is not None else settings.STORE_CACHE_MAX_ENTRIES,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        dedup_id: str | None = None,
        priority: int = READ_PRIORITY,
    ) -> Any:
        url = f"{self.base_url}{path}"

        async def action() -> Any:
            response = await self.client.request(
                method, url, params=params, json=json, headers={**self.headers, **(headers or {})}
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        logger.debug(f"store={self.name} event=request method={method} path={path}")
        return await self.queue.enqueue(action, id=dedup_id, priority=priority)

    async def _cached_read(
        self,
        cache_key: str,
        path: str,
        params: dict[str, Any] | None,
        parse: Callable[[Any], Any],
    ) -> Any:
        cached = self.cache.get(cache_key)
        if cached is not None:
            return _copy(cached)

        data = await self._request("GET", path, params=params, dedup_id=f"{self.name}:{cache_key}")
        value = parse(data)
        if value is not None:
            self.cache.set(cache_key, value)
        return _copy(value)

    def _invalidate(self, conversation_id: str) -> None:
        self.cache.invalidate(f"conversation:{conversation_id}")
        self.cache.invalidate_prefix("query:")
