"""
MODULE OVERVIEW:
The FastAPI application for the development chat relay.

WHAT IS HAPPENING HERE:
The relay gives `WebSocketTransport` clients something to talk to when no
hosted socket server is around. On shutdown every open socket is closed so
clients see a clean close and start their reconnect loop.

Endpoints:
    GET  /healthz   liveness probe
    GET  /stats     RelayStats snapshot (connections, rooms, online users)
    WS   /ws/chat   the chat channel, see `routes/websocket.py`
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from reride.server.connection_manager import manager
from reride.server.middleware import TimingMiddleware
from reride.server.routes import websocket
from reride.shared.config import settings
from reride.shared.models import RelayStats


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"component=relay event=startup environment={settings.ENVIRONMENT} port={settings.PORT}")
    yield
    stats = manager.get_stats()
    logger.info(
        f"component=relay event=shutdown open_sockets={stats.active_connections} "
        f"events_relayed={stats.total_events_relayed}"
    )
    await manager.close_all()


app = FastAPI(
    title="ReRide Chat Relay",
    description="Development relay for conversation messages, typing, read receipts and presence",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware, slow_ms=settings.RELAY_SLOW_REQUEST_MS)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.RELAY_CORS_ORIGINS,
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(websocket.router, tags=["Chat"])


@app.get("/healthz", tags=["Ops"])
async def health_check():
    return {"status": "ok"}


@app.get("/stats", tags=["Ops"], response_model=RelayStats)
async def relay_stats():
    return manager.get_stats()
