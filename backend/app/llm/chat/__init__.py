"""Streaming chat sessions against a remote inference backend.

This module provides the core abstractions for session-based chat:
- ChatSession: Runs streamed turns and keeps the rolling context window
- ChatSessionManager: Manages session lifecycle
- StreamDecoder: Turns the event-stream body into typed frames
- CredentialResolver / ToolSchemaResolver: Per-turn configuration
- HistoryRecorder: Fire-and-forget persistence of each turn
"""

from app.llm.chat.backend import ChatBackend
from app.llm.chat.credentials import CredentialResolver
from app.llm.chat.errors import (
    ChatSessionError,
    ConfigResolutionError,
    EmptyStreamError,
    FrameParseError,
    StreamTimeoutError,
    TransportError,
    UpstreamError,
)
from app.llm.chat.history import HistoryRecorder
from app.llm.chat.manager import ChatSessionManager, get_session_manager
from app.llm.chat.memory import ConversationMemory
from app.llm.chat.models import (
    AssistantConfig,
    ChatRole,
    ChatSessionInfo,
    Identity,
    SessionEvent,
    SessionState,
    ToolConfig,
    Turn,
)
from app.llm.chat.session import ChatSession
from app.llm.chat.stream_decoder import StreamDecoder
from app.llm.chat.tool_schema import ToolSchemaResolver

__all__ = [
    "AssistantConfig",
    "ChatBackend",
    "ChatRole",
    "ChatSession",
    "ChatSessionError",
    "ChatSessionInfo",
    "ChatSessionManager",
    "ConfigResolutionError",
    "ConversationMemory",
    "CredentialResolver",
    "EmptyStreamError",
    "FrameParseError",
    "HistoryRecorder",
    "Identity",
    "SessionEvent",
    "SessionState",
    "StreamDecoder",
    "StreamTimeoutError",
    "ToolConfig",
    "ToolSchemaResolver",
    "TransportError",
    "Turn",
    "UpstreamError",
    "get_session_manager",
]
