import asyncio
import sys
from pathlib import Path
from typing import Any

# Add the project root to the path so tests run from a plain checkout
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pytest

from reride.chat.session import RealtimeChatSession
from reride.chat.transport import Transport
from reride.shared.errors import TransportError
from reride.shared.keys import conversation_id
from reride.shared.models import Conversation
from reride.stores.local import LocalConversationStore

CUSTOMER = "alice@example.com"
SELLER = "bob@example.com"


class FakeTransport(Transport):
    """In-memory transport that records emits and lets tests inject inbound events."""

    name = "fake"

    def __init__(self, fail_connect: bool = False, auto_open: bool = True):
        super().__init__()
        self.fail_connect = fail_connect
        self.auto_open = auto_open
        self.fail_emit = False
        self.connect_delay = 0.01
        self.emit_delay = 0.0
        self.connect_calls = 0
        self.emitted: list[tuple[str, Any]] = []
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self, identity: str, role: str) -> None:
        self.connect_calls += 1
        await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise TransportError("unreachable")
        if self.auto_open:
            await self.open()

    async def open(self) -> None:
        self._connected = True
        await self._dispatch("connect")

    async def drop(self) -> None:
        self._connected = False
        await self._dispatch("disconnect", {"reason": "transport close"})

    async def receive(self, event: str, data: Any) -> None:
        await self._dispatch(event, data)

    async def emit(self, event: str, data: Any) -> None:
        if self.emit_delay:
            await asyncio.sleep(self.emit_delay)
        if not self._connected or self.fail_emit:
            raise TransportError("not connected")
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self._connected = False

    def events(self, name: str) -> list[Any]:
        return [data for event, data in self.emitted if event == name]


@pytest.fixture
def conversation():
    return Conversation(
        id=conversation_id(CUSTOMER, 42),
        customer_id=CUSTOMER,
        customer_name="Alice",
        seller_id=SELLER,
        seller_name="Bob",
        vehicle_id=42,
        vehicle_name="Honda Civic",
        vehicle_price=18500,
    )


@pytest.fixture
async def store(conversation):
    store = LocalConversationStore()
    await store.create(conversation)
    return store


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
async def session(transport, store):
    session = RealtimeChatSession(
        transport,
        store,
        join_timeout_s=0.2,
        typing_expiry_s=0.05,
        max_reconnect_attempts=3,
    )
    yield session
    await session.disconnect()
