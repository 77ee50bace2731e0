"""Service settings loaded from environment variables."""

import os

from pydantic import BaseModel


class ChatSettings(BaseModel):
    """Settings for chat sessions and their collaborators."""

    # Inference backend serving /chat-stream and /gpt-opened
    backend_url: str = "http://localhost:8000"
    # Platform API serving credentials, chat history and tool configurations
    platform_url: str = "http://localhost:5000"
    idle_timeout_seconds: float = 60.0
    session_timeout_minutes: int = 30
    cleanup_interval_seconds: float = 60.0
    http_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "ChatSettings":
        return cls(
            backend_url=os.getenv("CHAT_BACKEND_URL", cls.model_fields["backend_url"].default),
            platform_url=os.getenv("PLATFORM_API_URL", cls.model_fields["platform_url"].default),
            idle_timeout_seconds=float(os.getenv("CHAT_IDLE_TIMEOUT_SECONDS", "60")),
            session_timeout_minutes=int(os.getenv("CHAT_SESSION_TIMEOUT_MINUTES", "30")),
            cleanup_interval_seconds=float(os.getenv("CHAT_CLEANUP_INTERVAL_SECONDS", "60")),
            http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
        )
