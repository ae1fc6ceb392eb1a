import httpx
from loguru import logger

from reride.queueing.request_queue import RequestQueue
from reride.shared.config import Settings
from reride.stores.base import ConversationStore
from reride.stores.firebase import FirebaseConversationStore
from reride.stores.local import LocalConversationStore
from reride.stores.supabase import SupabaseConversationStore


def build_store(
    config: Settings,
    queue: RequestQueue,
    client: httpx.AsyncClient | None = None,
) -> ConversationStore:
    """Pick the conversation store named by STORE_BACKEND. Raises ValueError on missing settings."""
    config.check_backend()
    cache_options = {"cache_ttl_s": config.STORE_CACHE_TTL_S, "cache_max_entries": config.STORE_CACHE_MAX_ENTRIES}

    if config.STORE_BACKEND == "supabase":
        store = SupabaseConversationStore(config.SUPABASE_URL, config.SUPABASE_KEY, queue, client=client, **cache_options)
    elif config.STORE_BACKEND == "firebase":
        store = FirebaseConversationStore(
            config.FIREBASE_DATABASE_URL, queue, auth_token=config.FIREBASE_AUTH_TOKEN, client=client, **cache_options
        )
    else:
        store = LocalConversationStore(config.STORE_LOCAL_PATH)

    logger.info(f"component=store event=selected backend={store.name}")
    return store
