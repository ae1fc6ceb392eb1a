"""
Conversions between Conversation models and the storage shapes of the
hosted backends.

Relational rows are snake_case, keep `vehicle_id` as text and nest the
message list under `metadata.messages`. Realtime-database documents are the
camelCase wire form; their message lists may come back as an object keyed by
index when the array is sparse.
"""
from typing import Any

from pydantic.alias_generators import to_camel

from reride.shared.models import ChatMessage, Conversation, utc_now_iso

ROW_COLUMNS = (
    "customer_id",
    "customer_name",
    "seller_id",
    "seller_name",
    "vehicle_name",
    "vehicle_price",
    "last_message",
    "last_message_at",
    "is_read_by_seller",
    "is_read_by_customer",
    "is_flagged",
    "flag_reason",
    "flagged_at",
    "created_at",
    "updated_at",
)


def _dump_messages(messages: list[ChatMessage | dict[str, Any]]) -> list[dict[str, Any]]:
    return [m.wire() if isinstance(m, ChatMessage) else dict(m) for m in messages]


# ==========================
# RELATIONAL ROWS
# ==========================
def row_to_conversation(row: dict[str, Any]) -> Conversation:
    now = utc_now_iso()
    metadata = row.get("metadata") or {}
    price = row.get("vehicle_price")
    try:
        vehicle_id = int(row.get("vehicle_id") or 0)
    except (TypeError, ValueError):
        vehicle_id = 0

    return Conversation(
        id=row["id"],
        customer_id=row.get("customer_id") or "",
        customer_name=row.get("customer_name") or "",
        seller_id=row.get("seller_id") or "",
        seller_name=row.get("seller_name"),
        vehicle_id=vehicle_id,
        vehicle_name=row.get("vehicle_name") or "",
        vehicle_price=float(price) if price else None,
        messages=metadata.get("messages") or [],
        last_message=row.get("last_message"),
        last_message_at=row.get("last_message_at") or now,
        is_read_by_seller=bool(row.get("is_read_by_seller")),
        is_read_by_customer=row["is_read_by_customer"] if row.get("is_read_by_customer") is not None else True,
        is_flagged=bool(row.get("is_flagged")),
        flag_reason=row.get("flag_reason"),
        flagged_at=row.get("flagged_at"),
        created_at=row.get("created_at") or now,
        updated_at=row.get("updated_at") or now,
    )


def conversation_to_row(conversation: Conversation) -> dict[str, Any]:
    row = {"id": conversation.id, "vehicle_id": str(conversation.vehicle_id)}
    for column in ROW_COLUMNS:
        row[column] = getattr(conversation, column)
    row["metadata"] = {"messages": _dump_messages(conversation.messages)}
    return row


def updates_to_row(updates: dict[str, Any]) -> dict[str, Any]:
    """Map a partial update to row columns, touching only the columns named in `updates`."""
    row: dict[str, Any] = {}
    for key, value in updates.items():
        if key == "id":
            continue
        if key == "messages":
            row["metadata"] = {"messages": _dump_messages(value)}
        elif key == "vehicle_id":
            row["vehicle_id"] = str(value)
        elif key in ROW_COLUMNS:
            row[key] = value
        else:
            raise ValueError(f"Unknown conversation field: {key}")
    return row


# ==========================
# REALTIME-DATABASE DOCUMENTS
# ==========================
def document_to_conversation(document: dict[str, Any], key: str | None = None) -> Conversation:
    data = dict(document)
    messages = data.get("messages") or []
    if isinstance(messages, dict):
        messages = [messages[k] for k in sorted(messages, key=lambda k: int(k) if str(k).isdigit() else k)]
    data["messages"] = [m for m in messages if m]
    if not data.get("id") and key:
        data["id"] = key
    return Conversation.model_validate(data)


def conversation_to_document(conversation: Conversation) -> dict[str, Any]:
    return conversation.wire()


def updates_to_document(updates: dict[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for key, value in updates.items():
        if key == "id":
            continue
        if key not in Conversation.model_fields:
            raise ValueError(f"Unknown conversation field: {key}")
        document[to_camel(key)] = _dump_messages(value) if key == "messages" else value
    return document
