"""
MODULE OVERVIEW:
The chat relay's WebSocket route.

WHAT IS HAPPENING HERE:
Upgrades the HTTP request to a WebSocket, registers the socket with the
ConnectionManager under the caller's identity, then hands every inbound
envelope to the manager until the client goes away.
"""
import uuid

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from loguru import logger
from pydantic import ValidationError

from reride.server.connection_manager import manager
from reride.shared.models import TransportEnvelope

router = APIRouter()

ROLES = ("customer", "seller")


@router.websocket("/ws/chat")
async def chat_endpoint(
    websocket: WebSocket,
    user_email: str | None = Query(None, alias="userEmail"),
    user_role: str | None = Query(None, alias="userRole"),
):
    if not user_email or user_role not in ROLES:
        logger.warning(f"event=rejected reason='missing identity' role={user_role}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    client_id = f"client-{uuid.uuid4().hex[:8]}"
    await manager.connect(client_id, websocket, user_email, user_role)

    try:
        while True:
            text_data = await websocket.receive_text()
            try:
                envelope = TransportEnvelope.model_validate_json(text_data)
            except ValidationError:
                logger.warning(f"client_id={client_id} event=frame_skipped reason=invalid_envelope")
                continue
            await manager.handle(client_id, envelope)
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(client_id)
