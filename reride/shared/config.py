"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every timing, ceiling and backend choice used by the request queue, the chat
session and the conversation stores is declared once here. Components take
explicit constructor arguments as well, so tests build isolated instances
without touching the environment; the CLI and the composition root read the
module-level `settings` object.
"""
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: Literal["development", "production"] = "development"

    # Development relay
    RELAY_CORS_ORIGINS: list[str] = ["*"]
    RELAY_SLOW_REQUEST_MS: float = 500.0

    # Request queue
    QUEUE_CONCURRENCY: int = 1
    QUEUE_MAX_RETRIES: int = 3
    QUEUE_BASE_BACKOFF_S: float = 1.0
    QUEUE_MAX_BACKOFF_S: float = 30.0
    QUEUE_REQUEST_INTERVAL_S: float = 0.2
    QUEUE_REQUEST_TIMEOUT_S: float = 8.0

    # Realtime chat
    CHAT_TRANSPORT: Literal["socketio", "websocket", "none"] = "websocket"
    CHAT_SOCKET_URL: str = "http://localhost:3001"
    CHAT_WS_URL: str = "ws://127.0.0.1:8000/ws/chat"
    CHAT_CONNECT_TIMEOUT_S: float = 5.0
    CHAT_RECONNECT_ATTEMPTS: int = 5
    CHAT_RECONNECT_DELAY_S: float = 1.0
    CHAT_RECONNECT_DELAY_MAX_S: float = 2.0
    CHAT_JOIN_TIMEOUT_S: float = 3.0
    CHAT_TYPING_EXPIRY_S: float = 3.0
    CHAT_PRESENCE_MAX_ENTRIES: int = 1000
    CHAT_PENDING_MAX_PER_CONVERSATION: int = 100
    CHAT_PENDING_MAX_CONVERSATIONS: int = 500

    # Conversation store
    STORE_BACKEND: Literal["local", "supabase", "firebase"] = "local"
    STORE_LOCAL_PATH: str | None = None
    SUPABASE_URL: str | None = None
    SUPABASE_KEY: str | None = None
    FIREBASE_DATABASE_URL: str | None = None
    FIREBASE_AUTH_TOKEN: str | None = None
    STORE_CACHE_TTL_S: float = 10.0
    STORE_CACHE_MAX_ENTRIES: int = 50

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    def check_backend(self) -> None:
        """Raise ValueError naming every setting the chosen store backend is missing."""
        errors = []
        if self.STORE_BACKEND == "supabase":
            if not self.SUPABASE_URL:
                errors.append("SUPABASE_URL is required for the supabase backend")
            if not self.SUPABASE_KEY:
                errors.append("SUPABASE_KEY is required for the supabase backend")
        elif self.STORE_BACKEND == "firebase":
            if not self.FIREBASE_DATABASE_URL:
                errors.append("FIREBASE_DATABASE_URL is required for the firebase backend")

        if errors:
            raise ValueError("Config errors:\n  " + "\n  ".join(errors))


settings = Settings()
