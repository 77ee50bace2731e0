"""Registry of live chat sessions and the HTTP clients they share."""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any

import httpx

from app.config import ChatSettings
from app.llm.chat.backend import ChatBackend
from app.llm.chat.credentials import CredentialResolver
from app.llm.chat.history import HistoryRecorder
from app.llm.chat.models import AssistantConfig, ChatSessionInfo, Identity
from app.llm.chat.session import ChatSession, new_session_id

logger = logging.getLogger(__name__)

# Process-wide instance used by the API layer
_manager: "ChatSessionManager | None" = None


class ChatSessionManager:
    """Owns every open ChatSession in this process.

    Sessions are kept in memory and keyed by id. The manager holds one
    httpx client for the inference backend and one for the platform API;
    every session it creates borrows them. A background sweep closes
    sessions that sat idle longer than the configured timeout.
    """

    def __init__(
        self,
        settings: ChatSettings | None = None,
        backend_client: httpx.AsyncClient | None = None,
        platform_client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            settings: Service settings (read from the environment if omitted).
            backend_client: Client for the inference backend.
            platform_client: Client for credentials, history and tool registry.
        """
        self._settings = settings or ChatSettings.from_env()
        self._sessions: dict[str, ChatSession] = {}
        self._idle_limit = timedelta(minutes=self._settings.session_timeout_minutes)
        self._sweep_task: asyncio.Task | None = None

        # Stream reads are bounded by the session idle timeout, not the client
        timeout = httpx.Timeout(self._settings.http_timeout_seconds, read=None)
        self._backend_client = backend_client or httpx.AsyncClient(
            base_url=self._settings.backend_url, timeout=timeout
        )
        self._platform_client = platform_client or httpx.AsyncClient(
            base_url=self._settings.platform_url,
            timeout=self._settings.http_timeout_seconds,
        )
        self._backend = ChatBackend(self._backend_client)
        self._credential_resolver = CredentialResolver(self._platform_client)

    @property
    def active_session_count(self) -> int:
        return len(self._sessions)

    async def create_session(
        self,
        identity: Identity,
        assistant: AssistantConfig,
        restore_history: bool = False,
    ) -> ChatSession:
        """Open a session for ``identity`` talking to ``assistant``.

        The session is registered only after its setup (credentials, tool
        registry, optional history restore, backend notification) finished.
        """
        session = ChatSession(
            session_id=new_session_id(),
            identity=identity,
            assistant=assistant,
            backend=self._backend,
            credential_resolver=self._credential_resolver,
            history=HistoryRecorder(self._platform_client, identity, assistant),
            registry_client=self._platform_client,
            idle_timeout=self._settings.idle_timeout_seconds,
        )
        await session.initialize(restore_history=restore_history)

        self._sessions[session.session_id] = session
        logger.info(
            f"Opened session {session.session_id} for user {identity.user_id} "
            f"and assistant {assistant.id} ({len(self._sessions)} open)"
        )
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        """Look up a session; a hit counts as activity for the idle sweep."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = datetime.now()
        return session

    def get_sessions_for_assistant(self, assistant_id: str) -> list[ChatSession]:
        return [s for s in self._sessions.values() if s.assistant.id == assistant_id]

    def list_sessions(self) -> list[ChatSessionInfo]:
        return [session_info(s) for s in self._sessions.values()]

    async def close_session(self, session_id: str) -> bool:
        """Abort the session's turn, flush its history saves and forget it.

        Returns:
            False if no session has this id.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"Session {session_id} removed ({len(self._sessions)} open)")
        return True

    async def cleanup_expired(self) -> int:
        """Close sessions idle past the timeout. Sessions mid-turn are kept.

        Returns:
            How many sessions were closed.
        """
        cutoff = datetime.now() - self._idle_limit
        stale = [
            session_id
            for session_id, session in self._sessions.items()
            if session.last_activity < cutoff and not session.is_processing
        ]
        for session_id in stale:
            await self.close_session(session_id)

        if stale:
            logger.info(f"Idle sweep closed {len(stale)} session(s): {', '.join(stale)}")
        return len(stale)

    async def start_cleanup_task(self) -> None:
        if self._sweep_task is not None:
            return
        self._sweep_task = asyncio.create_task(self._sweep_forever())
        logger.info(
            f"Idle session sweep every {self._settings.cleanup_interval_seconds:g}s, "
            f"timeout {self._settings.session_timeout_minutes} min"
        )

    async def stop_cleanup_task(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_forever(self) -> None:
        interval = self._settings.cleanup_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.exception(f"Idle session sweep failed: {e}")

    async def shutdown(self) -> None:
        """Close every session, then the shared clients."""
        await self.stop_cleanup_task()

        for session_id in list(self._sessions):
            await self.close_session(session_id)

        await self._backend_client.aclose()
        await self._platform_client.aclose()
        logger.info("Chat session manager stopped")

    def get_stats(self) -> dict[str, Any]:
        sessions = list(self._sessions.values())
        now = datetime.now()
        oldest = min((s.created_at for s in sessions), default=None)
        return {
            "active_sessions": len(sessions),
            "processing_sessions": sum(s.is_processing for s in sessions),
            "sessions_by_assistant": dict(Counter(s.assistant.id for s in sessions)),
            "oldest_session_age_seconds": (now - oldest).total_seconds() if oldest else None,
            "cleanup_task_running": self._sweep_task is not None,
        }


def session_info(session: ChatSession) -> ChatSessionInfo:
    return ChatSessionInfo(
        session_id=session.session_id,
        assistant_id=session.assistant.id,
        user_id=session.identity.user_id,
        state=session.state,
        created_at=session.created_at,
        last_activity=session.last_activity,
        message_count=len(session.messages),
        memory_size=len(session.memory),
        is_active=session.is_active,
    )


def get_session_manager() -> ChatSessionManager:
    """Return the process-wide manager, creating it from the environment."""
    global _manager
    if _manager is None:
        _manager = ChatSessionManager()
    return _manager


def set_session_manager(manager: "ChatSessionManager | None") -> None:
    """Install a preconfigured manager (tests and embedding applications)."""
    global _manager
    _manager = manager


async def init_session_manager() -> ChatSessionManager:
    manager = get_session_manager()
    await manager.start_cleanup_task()
    return manager


async def shutdown_session_manager() -> None:
    """Stop the process-wide manager and drop it."""
    global _manager
    if _manager is not None:
        await _manager.shutdown()
        _manager = None
