"""Tests for the conversation stores and their mappers."""

import asyncio
import json

import httpx
import pytest

from reride.queueing.request_queue import RequestQueue
from reride.shared.config import Settings
from reride.shared.errors import ConversationNotFoundError, StoreError
from reride.shared.models import ChatMessage
from reride.stores.factory import build_store
from reride.stores.firebase import FirebaseConversationStore
from reride.stores.local import LocalConversationStore
from reride.stores.mappers import (
    document_to_conversation,
    row_to_conversation,
    updates_to_document,
    updates_to_row,
)
from reride.stores.supabase import SupabaseConversationStore

from conftest import CUSTOMER, SELLER


def make_queue() -> RequestQueue:
    return RequestQueue(concurrency=1, max_retries=2, base_backoff_s=0.01, request_interval_s=0, timeout_s=1.0)


class TestMappers:
    """Tests for row and document mapping."""

    def test_row_defaults(self):
        conversation = row_to_conversation({"id": "a_7", "vehicle_id": "7", "vehicle_price": "12000.5"})
        assert conversation.vehicle_id == 7
        assert conversation.vehicle_price == 12000.5
        assert conversation.messages == []
        assert conversation.is_read_by_customer is True
        assert conversation.is_read_by_seller is False

    def test_row_messages_come_from_metadata(self):
        row = {"id": "a_7", "metadata": {"messages": [{"id": 1, "sender": "user", "text": "hi"}]}}
        assert row_to_conversation(row).messages[0].text == "hi"

    def test_partial_row_update_touches_only_named_columns(self):
        row = updates_to_row({"messages": [ChatMessage(id=1, sender="seller", text="yes")], "last_message": "yes"})
        assert set(row) == {"metadata", "last_message"}
        assert row["metadata"]["messages"][0]["text"] == "yes"

    def test_unknown_update_field_is_rejected(self):
        with pytest.raises(ValueError):
            updates_to_row({"colour": "red"})

    def test_document_with_sparse_message_object(self):
        document = {
            "customerId": CUSTOMER,
            "vehicleId": 42,
            "messages": {"1": {"id": 2, "sender": "seller", "text": "b"}, "0": {"id": 1, "sender": "user", "text": "a"}},
        }
        conversation = document_to_conversation(document, "alice@example_com_42")
        assert conversation.id == "alice@example_com_42"
        assert [m.text for m in conversation.messages] == ["a", "b"]

    def test_document_updates_are_camel_case(self):
        assert updates_to_document({"is_read_by_seller": True}) == {"isReadBySeller": True}


class TestLocalStore:
    """Tests for LocalConversationStore and the composite operations."""

    async def test_append_message_to_missing_conversation_is_not_an_upsert(self, store):
        result = await store.append_message("ghost_1", ChatMessage(id=1, sender="user", text="hi"))
        assert result.success is False
        assert result.not_found is True
        assert await store.find_by_id("ghost_1") is None

    async def test_append_updates_last_message_and_read_flags(self, store, conversation):
        result = await store.append_message(conversation.id, ChatMessage(id=1, sender="seller", text="Yes it is"))

        assert result.success is True
        saved = await store.find_by_id(conversation.id)
        assert saved.last_message == "Yes it is"
        assert saved.is_read_by_customer is False

    async def test_concurrent_appends_keep_every_message(self, store, conversation):
        await asyncio.gather(
            *(store.append_message(conversation.id, ChatMessage(id=i, sender="user", text=str(i))) for i in range(5))
        )
        saved = await store.find_by_id(conversation.id)
        assert sorted(m.id for m in saved.messages) == [0, 1, 2, 3, 4]

    async def test_mark_read_and_flag(self, store, conversation):
        await store.append_message(conversation.id, ChatMessage(id=1, sender="user", text="hi"))
        await store.mark_read(conversation.id, "seller")
        saved = await store.find_by_id(conversation.id)
        assert saved.is_read_by_seller is True
        assert saved.messages[0].is_read is True

        result = await store.flag(conversation.id, "spam")
        assert result.success is True
        assert result.data.is_flagged is True
        assert result.data.flag_reason == "spam"

    async def test_lookups(self, store, conversation):
        assert [c.id for c in await store.find_by_customer(CUSTOMER)] == [conversation.id]
        assert [c.id for c in await store.find_by_seller(SELLER)] == [conversation.id]
        assert (await store.find_by_vehicle_and_customer(42, CUSTOMER)).id == conversation.id
        assert await store.find_by_vehicle_and_customer(43, CUSTOMER) is None

    async def test_duplicate_create_is_rejected(self, store, conversation):
        with pytest.raises(StoreError):
            await store.create(conversation)

    async def test_update_missing_raises(self, store):
        with pytest.raises(ConversationNotFoundError):
            await store.update("ghost_1", {"is_flagged": True})

    async def test_persists_to_json_file(self, tmp_path, conversation):
        path = tmp_path / "conversations.json"
        first = LocalConversationStore(path)
        await first.create(conversation)
        await first.append_message(conversation.id, ChatMessage(id=1, sender="user", text="saved"))

        second = LocalConversationStore(path)
        reloaded = await second.find_by_id(conversation.id)
        assert [m.text for m in reloaded.messages] == ["saved"]
        assert json.loads(path.read_text())[0]["customerId"] == CUSTOMER


class FakeSupabase:
    """A tiny PostgREST stand-in for httpx.MockTransport."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_next: list[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0))

        filters = {k: v.removeprefix("eq.") for k, v in request.url.params.items() if v.startswith("eq.")}
        matches = [r for r in self.rows.values() if all(str(r.get(k)) == v for k, v in filters.items())]

        if request.method == "GET":
            return httpx.Response(200, json=matches)
        if request.method == "POST":
            row = json.loads(request.content)
            self.rows[row["id"]] = row
            return httpx.Response(201, json=[row])
        if request.method == "PATCH":
            patch = json.loads(request.content)
            for row in matches:
                row.update(patch)
            return httpx.Response(200, json=matches)
        if request.method == "DELETE":
            for row in matches:
                del self.rows[row["id"]]
            return httpx.Response(204)
        return httpx.Response(405)


class TestSupabaseStore:
    """Tests for SupabaseConversationStore over a mocked HTTP transport."""

    @pytest.fixture
    async def backend(self):
        fake = FakeSupabase()
        queue = make_queue()
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        store = SupabaseConversationStore("https://db.example.com", "anon-key", queue, client=client)
        yield fake, store
        await client.aclose()
        await queue.shutdown()

    async def test_create_find_and_append(self, backend, conversation):
        fake, store = backend
        await store.create(conversation)

        result = await store.append_message(conversation.id, ChatMessage(id=1, sender="user", text="hello"))

        assert result.success is True
        saved = await store.find_by_id(conversation.id)
        assert [m.text for m in saved.messages] == ["hello"]
        assert fake.rows[conversation.id]["vehicle_id"] == "42"
        assert fake.requests[0].headers["apikey"] == "anon-key"
        assert fake.requests[0].headers["authorization"] == "Bearer anon-key"

    async def test_reads_are_cached_and_writes_invalidate(self, backend, conversation):
        fake, store = backend
        await store.create(conversation)

        await store.find_by_id(conversation.id)
        await store.find_by_id(conversation.id)
        gets = [r for r in fake.requests if r.method == "GET"]
        assert len(gets) == 1

        await store.update(conversation.id, {"is_flagged": True})
        assert (await store.find_by_id(conversation.id)).is_flagged is True

    async def test_append_to_missing_conversation(self, backend):
        fake, store = backend
        result = await store.append_message("ghost_1", ChatMessage(id=1, sender="user", text="x"))
        assert result.not_found is True
        assert not any(r.method == "PATCH" for r in fake.requests)

    async def test_transient_server_error_is_retried(self, backend, conversation):
        fake, store = backend
        await store.create(conversation)
        fake.fail_next = [502]
        assert (await store.find_by_vehicle_and_customer(42, CUSTOMER)).id == conversation.id

    async def test_rate_limit_surfaces(self, backend):
        fake, store = backend
        fake.fail_next = [429]
        with pytest.raises(httpx.HTTPStatusError):
            await store.find_all()
        assert len(fake.requests) == 1

    async def test_update_missing_raises_not_found(self, backend):
        _, store = backend
        with pytest.raises(ConversationNotFoundError):
            await store.update("ghost_1", {"is_flagged": True})


class FakeRealtimeDatabase:
    """A tiny realtime-database REST stand-in for httpx.MockTransport."""

    def __init__(self):
        self.documents: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removesuffix(".json").strip("/").split("/")
        key = path[1] if len(path) > 1 else None

        if request.method == "GET" and key is None:
            if "orderBy" in request.url.params:
                field = json.loads(request.url.params["orderBy"])
                value = json.loads(request.url.params["equalTo"])
                return httpx.Response(200, json={k: d for k, d in self.documents.items() if d.get(field) == value})
            return httpx.Response(200, json=self.documents or None)
        if request.method == "GET":
            return httpx.Response(200, json=self.documents.get(key))
        if request.method == "PUT":
            self.documents[key] = json.loads(request.content)
            return httpx.Response(200, json=self.documents[key])
        if request.method == "PATCH":
            self.documents.setdefault(key, {}).update(json.loads(request.content))
            return httpx.Response(200, json=self.documents[key])
        if request.method == "DELETE":
            self.documents.pop(key, None)
            return httpx.Response(200, json=None)
        return httpx.Response(405)


class TestFirebaseStore:
    """Tests for FirebaseConversationStore over a mocked HTTP transport."""

    @pytest.fixture
    async def backend(self):
        fake = FakeRealtimeDatabase()
        queue = make_queue()
        client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
        store = FirebaseConversationStore("https://rtdb.example.com", queue, auth_token="secret", client=client)
        yield fake, store
        await client.aclose()
        await queue.shutdown()

    async def test_keys_are_email_safe(self, backend, conversation):
        fake, store = backend
        await store.create(conversation)

        assert list(fake.documents) == ["alice@example_com_42"]
        assert fake.requests[0].url.params["auth"] == "secret"
        assert (await store.find_by_id(conversation.id)).id == conversation.id

    async def test_append_and_query(self, backend, conversation):
        _, store = backend
        await store.create(conversation)
        await store.append_message(conversation.id, ChatMessage(id=1, sender="user", text="hi"))

        [found] = await store.find_by_customer(CUSTOMER)
        assert [m.text for m in found.messages] == ["hi"]
        assert (await store.find_by_vehicle_and_customer(42, CUSTOMER)).id == conversation.id
        assert await store.find_by_vehicle_and_customer(42, "someone@else.com") is None

    async def test_update_never_creates_documents(self, backend):
        fake, store = backend
        with pytest.raises(ConversationNotFoundError):
            await store.update("ghost_1", {"is_flagged": True})
        assert fake.documents == {}

    async def test_delete(self, backend, conversation):
        _, store = backend
        await store.create(conversation)
        await store.delete(conversation.id)
        assert await store.find_all() == []


class TestBuildStore:
    """Tests for backend selection."""

    def test_local_is_the_default(self):
        store = build_store(Settings(STORE_BACKEND="local", STORE_LOCAL_PATH=None), make_queue())
        assert isinstance(store, LocalConversationStore)

    def test_supabase_selected(self):
        config = Settings(STORE_BACKEND="supabase", SUPABASE_URL="https://db.example.com", SUPABASE_KEY="k")
        store = build_store(config, make_queue(), client=httpx.AsyncClient())
        assert isinstance(store, SupabaseConversationStore)

    def test_missing_settings_raise(self):
        with pytest.raises(ValueError):
            build_store(Settings(STORE_BACKEND="firebase", FIREBASE_DATABASE_URL=None), make_queue())
