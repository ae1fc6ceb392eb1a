"""
MODULE OVERVIEW:
Strictly typed data structures shared by the chat session, the stores and the
development relay, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Attributes are snake_case in Python and camelCase on the wire. Every model
accepts either spelling on input (`populate_by_name`) and `wire()` dumps the
camelCase form that the transports and the relay exchange.
"""
from typing import Any, Literal
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["customer", "seller"]
Sender = Literal["user", "seller", "system"]
DeliveryState = Literal["sending", "sent", "delivered", "read", "failed"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class MessagePayload(WireModel):
    date: str | None = None
    time: str | None = None
    offer_price: float | None = None
    counter_price: float | None = None
    status: Literal["pending", "accepted", "rejected", "countered", "confirmed"] | None = None


class ChatMessage(WireModel):
    id: int | str
    sender: Sender
    text: str
    timestamp: str = Field(default_factory=utc_now_iso)
    is_read: bool = False
    type: Literal["text", "test_drive_request", "offer"] | None = None
    payload: MessagePayload | None = None
    status: DeliveryState | None = None


class Conversation(WireModel):
    # The id is always "{customer_id}_{vehicle_id}", see shared.keys.conversation_id
    id: str
    customer_id: str
    customer_name: str = ""
    seller_id: str = ""
    seller_name: str | None = None
    vehicle_id: int = 0
    vehicle_name: str = ""
    vehicle_price: float | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    last_message: str | None = None
    last_message_at: str = Field(default_factory=utc_now_iso)
    is_read_by_seller: bool = False
    is_read_by_customer: bool = True
    is_flagged: bool = False
    flag_reason: str | None = None
    flagged_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class MessageDeliveryStatus(WireModel):
    message_id: int | str
    conversation_id: str
    status: DeliveryState


class TypingStatus(WireModel):
    conversation_id: str
    user_role: Role
    is_typing: bool


class ReadReceipt(WireModel):
    conversation_id: str
    message_id: int | str
    read_by: Role


class PresenceStatus(WireModel):
    user_email: str
    user_role: Role
    is_online: bool
    conversation_id: str | None = None
    last_seen: str | None = None


class UserPresence(WireModel):
    user_email: str
    user_role: Role
    is_online: bool
    last_seen: str | None = None


class Notification(WireModel):
    id: int | str
    recipient_email: str
    message: str
    target_id: int | str | None = None
    target_type: str | None = None
    is_read: bool = False
    timestamp: str = Field(default_factory=utc_now_iso)


class StoreResult(BaseModel):
    success: bool
    error: str | None = None
    not_found: bool = False
    data: Conversation | None = None


class SendResult(BaseModel):
    success: bool
    error: str | None = None


class TransportEnvelope(BaseModel):
    """One frame on the plain websocket transport."""
    event: str
    data: Any = None


class RelayStats(BaseModel):
    active_connections: int
    rooms: int
    online_users: int
    total_events_relayed: int
    uptime_s: float
    server_time: datetime
