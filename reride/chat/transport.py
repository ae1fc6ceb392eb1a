"""
MODULE OVERVIEW:
The live channels the chat session can run over.

WHAT IS HAPPENING HERE:
The session only needs a small surface: `on(event, handler)`, `emit(event,
payload)`, `connect`, `disconnect` and a `connected` flag. Three channels
implement it:

- SocketIOTransport: a python-socketio AsyncClient for the socket server of
  the development environment. Reconnection is socket.io's own, bounded by
  an attempt ceiling.
- WebSocketTransport: a plain `websockets` client that speaks JSON envelopes
  `{"event": ..., "data": ...}` to the relay in `reride.server`. A supervisor
  task reconnects with exponential backoff, bounded the same way.
- NullTransport: never connects; used when live delivery is switched off.

Lifecycle events are dispatched under the socket.io names on every channel:
"connect", "disconnect" and "connect_error".
"""
import asyncio
import inspect
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable
from urllib.parse import urlencode

import socketio
import websockets
from loguru import logger
from pydantic import ValidationError

from reride.shared.config import Settings
from reride.shared.errors import TransientError, TransportError
from reride.shared.models import TransportEnvelope
from reride.shared.retry import with_reconnect

EventHandler = Callable[[Any], Any]


class Transport(ABC):
    name: str = "unknown"

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: EventHandler | None = None) -> None:
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, ()):
            self._handlers[event].remove(handler)

    async def _dispatch(self, event: str, data: Any = None) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"transport={self.name} event={event} reason='handler failed: {e}'")

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self, identity: str, role: str) -> None:
        """Open the channel. Raises on failure; implementations may keep retrying in the background."""
        pass

    @abstractmethod
    async def emit(self, event: str, data: Any) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


class SocketIOTransport(Transport):
    name = "socketio"
    LIFECYCLE_EVENTS = ("connect", "disconnect", "connect_error")

    def __init__(
        self,
        url: str,
        reconnection_attempts: int = 5,
        reconnection_delay: float = 1.0,
        reconnection_delay_max: float = 2.0,
        connect_timeout: float = 5.0,
    ):
        super().__init__()
        self.url = url.rstrip('/')
        self.connect_timeout = connect_timeout
        self.sio = socketio.AsyncClient(
            reconnection=True,
            reconnection_attempts=reconnection_attempts,
            reconnection_delay=reconnection_delay,
            reconnection_delay_max=reconnection_delay_max,
            logger=False,
            engineio_logger=False,
        )
        self._bridged: set[str] = set()
        for event in self.LIFECYCLE_EVENTS:
            self._bridge(event)

    def _bridge(self, event: str) -> None:
        if event in self._bridged:
            return
        self._bridged.add(event)

        async def bridge(*args):
            await self._dispatch(event, args[0] if args else None)

        self.sio.on(event, bridge)

    def on(self, event: str, handler: EventHandler) -> None:
        super().on(event, handler)
        self._bridge(event)

    @property
    def connected(self) -> bool:
        return self.sio.connected

    async def connect(self, identity: str, role: str) -> None:
        query = urlencode({"userEmail": identity, "userRole": role})
        logger.info(f"transport=socketio event=connecting url={self.url}")
        await self.sio.connect(
            f"{self.url}?{query}",
            auth={"userEmail": identity, "userRole": role},
            transports=["websocket", "polling"],
            wait_timeout=self.connect_timeout,
        )

    async def emit(self, event: str, data: Any) -> None:
        if not self.sio.connected:
            raise TransportError("socket.io channel not connected")
        await self.sio.emit(event, data)

    async def disconnect(self) -> None:
        await self.sio.disconnect()


class WebSocketTransport(Transport):
    name = "websocket"

    def __init__(
        self,
        url: str,
        reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        reconnect_delay_max: float = 2.0,
        connect_timeout: float = 5.0,
    ):
        super().__init__()
        self.url = url
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.connect_timeout = connect_timeout

        self._target: str | None = None
        self._ws = None
        self._opened = asyncio.Event()
        self._supervisor: asyncio.Task | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, identity: str, role: str) -> None:
        if self._supervisor is None or self._supervisor.done():
            self._closing = False
            self._opened.clear()
            self._target = f"{self.url}?{urlencode({'userEmail': identity, 'userRole': role})}"
            self._supervisor = asyncio.create_task(
                with_reconnect(
                    self._hold_connection,
                    max_attempts=self.reconnect_attempts,
                    base_delay_s=self.reconnect_delay,
                    max_delay_s=self.reconnect_delay_max,
                    label=self.name,
                    should_stop=lambda: self._closing,
                    on_failure=self._on_attempt_failed,
                )
            )
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"websocket not open after {self.connect_timeout:.1f}s, retrying in background"
            ) from e

    async def _hold_connection(self) -> None:
        try:
            async with websockets.connect(self._target, open_timeout=self.connect_timeout) as ws:
                self._ws = ws
                self._opened.set()
                logger.info(f"transport=websocket event=open url={self.url}")
                await self._dispatch("connect")
                try:
                    async for raw in ws:
                        await self._handle_frame(raw)
                finally:
                    self._ws = None
                    self._opened.clear()
                    await self._dispatch("disconnect", {"reason": "closed"})
        except websockets.WebSocketException as e:
            raise TransientError(str(e)) from e

    async def _on_attempt_failed(self, attempt: int, error: BaseException) -> None:
        await self._dispatch("connect_error", {"message": str(error), "attempt": attempt})

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            envelope = TransportEnvelope.model_validate_json(raw)
        except ValidationError:
            logger.debug("transport=websocket event=frame_skipped reason=invalid_envelope")
            return
        await self._dispatch(envelope.event, envelope.data)

    async def emit(self, event: str, data: Any) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("websocket channel not connected")
        try:
            await ws.send(TransportEnvelope(event=event, data=data).model_dump_json())
        except websockets.WebSocketException as e:
            raise TransportError(str(e)) from e

    async def disconnect(self) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._supervisor is not None:
            self._supervisor.cancel()
            await asyncio.gather(self._supervisor, return_exceptions=True)
            self._supervisor = None
        self._ws = None
        self._opened.clear()


class NullTransport(Transport):
    name = "none"

    @property
    def connected(self) -> bool:
        return False

    async def connect(self, identity: str, role: str) -> None:
        logger.info("transport=none event=connect reason='live delivery disabled'")

    async def emit(self, event: str, data: Any) -> None:
        raise TransportError("live delivery disabled")

    async def disconnect(self) -> None:
        pass


def build_transport(config: Settings) -> Transport:
    if config.CHAT_TRANSPORT == "socketio":
        return SocketIOTransport(
            config.CHAT_SOCKET_URL,
            reconnection_attempts=config.CHAT_RECONNECT_ATTEMPTS,
            reconnection_delay=config.CHAT_RECONNECT_DELAY_S,
            reconnection_delay_max=config.CHAT_RECONNECT_DELAY_MAX_S,
            connect_timeout=config.CHAT_CONNECT_TIMEOUT_S,
        )
    if config.CHAT_TRANSPORT == "websocket":
        return WebSocketTransport(
            config.CHAT_WS_URL,
            reconnect_attempts=config.CHAT_RECONNECT_ATTEMPTS,
            reconnect_delay=config.CHAT_RECONNECT_DELAY_S,
            reconnect_delay_max=config.CHAT_RECONNECT_DELAY_MAX_S,
            connect_timeout=config.CHAT_CONNECT_TIMEOUT_S,
        )
    return NullTransport()
