"""LLM integration module for streamed assistant conversations."""

from app.llm.chat import ChatSession, ChatSessionManager, get_session_manager

__all__ = [
    "ChatSession",
    "ChatSessionManager",
    "get_session_manager",
]
