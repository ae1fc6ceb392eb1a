"""
MODULE OVERVIEW:
The relay's state registry: open sockets, conversation rooms and presence.

WHAT IS HAPPENING HERE:
Every client speaks JSON envelopes `{"event": ..., "data": ...}`. The manager
routes each inbound event to the other members of the conversation room:

- conversation:message   -> conversation:new-message to peers, and a
                            message:status back to the sender ("delivered" if
                            at least one peer got it, otherwise "sent")
- conversation:typing    -> conversation:typing to peers
- conversation:mark-read -> conversation:read plus message:status "read" to
                            peers
- conversation:join      -> room membership, with user:presence exchanged
                            between the joiner and the members already there

Presence is per (email, role). A user with several open sockets is online
while any of them is open; closing the last one broadcasts user:offline with
a lastSeen timestamp.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi.websockets import WebSocket
from loguru import logger

from reride.shared.keys import normalize_email, presence_key
from reride.shared.models import RelayStats, TransportEnvelope, utc_now_iso


@dataclass
class ClientConnection:
    client_id: str
    websocket: WebSocket = field(repr=False)
    email: str
    role: str
    rooms: set[str] = field(default_factory=set)

    @property
    def presence_key(self) -> str:
        return presence_key(self.email, self.role)


class ConnectionManager:
    def __init__(self):
        self.clients: dict[str, ClientConnection] = {}
        self.rooms: dict[str, set[str]] = defaultdict(set)
        self.last_seen: dict[str, str] = {}
        self.total_events_relayed = 0
        self.startup_time = datetime.now(timezone.utc)

    # ==========================
    # SOCKET LIFECYCLE
    # ==========================
    async def connect(self, client_id: str, websocket: WebSocket, email: str, role: str) -> ClientConnection:
        await websocket.accept()
        client = ClientConnection(client_id, websocket, normalize_email(email), role)
        first_socket = not self._online(client.presence_key)
        self.clients[client_id] = client
        logger.info(f"client_id={client_id} user={client.email} role={role} event=connect reason=accepted")

        if first_socket:
            await self._broadcast(
                "user:online", {"userEmail": client.email, "userRole": role}, exclude=client_id
            )
        return client

    async def disconnect(self, client_id: str) -> None:
        client = self.clients.pop(client_id, None)
        if client is None:
            return
        for room in client.rooms:
            members = self.rooms.get(room)
            if members is not None:
                members.discard(client_id)
                if not members:
                    del self.rooms[room]
        logger.info(f"client_id={client_id} user={client.email} event=disconnect reason=cleanup")

        if not self._online(client.presence_key):
            last_seen = utc_now_iso()
            self.last_seen[client.presence_key] = last_seen
            await self._broadcast(
                "user:offline", {"userEmail": client.email, "userRole": client.role, "lastSeen": last_seen}
            )

    async def close_all(self) -> None:
        for client_id, client in list(self.clients.items()):
            try:
                await client.websocket.close()
            except Exception as e:
                logger.debug(f"client_id={client_id} event=close_error reason='{e}'")
        self.clients.clear()
        self.rooms.clear()

    def _online(self, key: str) -> bool:
        return any(c.presence_key == key for c in self.clients.values())

    # ==========================
    # SENDING
    # ==========================
    async def send(self, client_id: str, event: str, data: Any) -> bool:
        client = self.clients.get(client_id)
        if client is None:
            return False
        try:
            await client.websocket.send_text(TransportEnvelope(event=event, data=data).model_dump_json())
            return True
        except Exception as e:
            logger.warning(f"client_id={client_id} event=send_error name={event} reason='{e}'")
            return False

    async def _to_room(self, conversation_id: str, event: str, data: Any, exclude: str | None = None) -> int:
        delivered = 0
        for member in list(self.rooms.get(conversation_id, ())):
            if member != exclude and await self.send(member, event, data):
                delivered += 1
        return delivered

    async def _broadcast(self, event: str, data: Any, exclude: str | None = None) -> None:
        for client_id in list(self.clients):
            if client_id != exclude:
                await self.send(client_id, event, data)

    # ==========================
    # INBOUND ROUTING
    # ==========================
    async def handle(self, client_id: str, envelope: TransportEnvelope) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return
        data = envelope.data if isinstance(envelope.data, dict) else {}
        conversation_id = data.get("conversationId")
        self.total_events_relayed += 1

        if envelope.event == "conversation:join" and conversation_id:
            await self._join(client, conversation_id)
        elif envelope.event == "conversation:leave" and conversation_id:
            self._leave(client, conversation_id)
        elif envelope.event == "conversation:message" and conversation_id and data.get("message"):
            await self._relay_message(client, conversation_id, data["message"])
        elif envelope.event == "conversation:typing" and conversation_id:
            await self._to_room(conversation_id, "conversation:typing", data, exclude=client_id)
        elif envelope.event == "conversation:mark-read" and conversation_id:
            await self._relay_read(client, conversation_id, data.get("messageIds") or [], data.get("readBy"))
        else:
            logger.debug(f"client_id={client_id} event=ignored name={envelope.event}")

    async def _join(self, client: ClientConnection, conversation_id: str) -> None:
        if conversation_id in client.rooms:
            return
        client.rooms.add(conversation_id)
        self.rooms[conversation_id].add(client.client_id)
        logger.debug(f"client_id={client.client_id} conversation_id={conversation_id} event=join")

        for member_id in list(self.rooms[conversation_id]):
            member = self.clients.get(member_id)
            if member is None or member_id == client.client_id:
                continue
            await self.send(
                client.client_id,
                "user:presence",
                {"userEmail": member.email, "userRole": member.role, "isOnline": True, "conversationId": conversation_id},
            )
            await self.send(
                member_id,
                "user:presence",
                {"userEmail": client.email, "userRole": client.role, "isOnline": True, "conversationId": conversation_id},
            )

    def _leave(self, client: ClientConnection, conversation_id: str) -> None:
        client.rooms.discard(conversation_id)
        members = self.rooms.get(conversation_id)
        if members is not None:
            members.discard(client.client_id)
            if not members:
                del self.rooms[conversation_id]

    async def _relay_message(self, client: ClientConnection, conversation_id: str, message: dict[str, Any]) -> None:
        if conversation_id not in client.rooms:
            await self._join(client, conversation_id)

        delivered = await self._to_room(
            conversation_id,
            "conversation:new-message",
            {"conversationId": conversation_id, "message": {**message, "status": "delivered"}},
            exclude=client.client_id,
        )
        if message.get("id") is not None:
            await self.send(
                client.client_id,
                "message:status",
                {
                    "messageId": message["id"],
                    "conversationId": conversation_id,
                    "status": "delivered" if delivered else "sent",
                },
            )

    async def _relay_read(
        self, client: ClientConnection, conversation_id: str, message_ids: list[Any], read_by: str | None
    ) -> None:
        for message_id in message_ids:
            await self._to_room(
                conversation_id,
                "conversation:read",
                {"conversationId": conversation_id, "messageId": message_id, "readBy": read_by or client.role},
                exclude=client.client_id,
            )
            await self._to_room(
                conversation_id,
                "message:status",
                {"messageId": message_id, "conversationId": conversation_id, "status": "read"},
                exclude=client.client_id,
            )

    # ==========================
    # METRICS
    # ==========================
    def get_stats(self) -> RelayStats:
        return RelayStats(
            active_connections=len(self.clients),
            rooms=len(self.rooms),
            online_users=len({c.presence_key for c in self.clients.values()}),
            total_events_relayed=self.total_events_relayed,
            uptime_s=(datetime.now(timezone.utc) - self.startup_time).total_seconds(),
            server_time=datetime.now(timezone.utc),
        )


# Global singleton instance
manager = ConnectionManager()
