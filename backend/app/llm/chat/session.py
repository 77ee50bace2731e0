"""ChatSession drives streamed turns against the inference backend."""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Iterable
from datetime import datetime
from typing import Any

import httpx

from app.llm.chat.backend import StreamingBackend
from app.llm.chat.credentials import CredentialResolver
from app.llm.chat.errors import (
    ChatSessionError,
    ConfigResolutionError,
    EmptyStreamError,
    StreamTimeoutError,
    TransportError,
    UpstreamError,
)
from app.llm.chat.history import HistoryRecorder
from app.llm.chat.memory import MEMORY_CAPACITY, ConversationMemory
from app.llm.chat.models import (
    AssistantConfig,
    ChatRole,
    ChatStreamRequest,
    ContentFrame,
    ContextMessage,
    DoneFrame,
    ErrorFrame,
    Identity,
    MemoryMessage,
    SessionEvent,
    SessionState,
    SourcesInfo,
    SourcesInfoFrame,
    StreamFrame,
    ToolConfig,
    Turn,
)
from app.llm.chat.stream_decoder import StreamDecoder
from app.llm.chat.tool_schema import ToolSchemaResolver, build_registry, fetch_tool_configs

logger = logging.getLogger(__name__)

# Seconds without a frame before a turn fails
DEFAULT_IDLE_TIMEOUT = 60.0

EMPTY_RESPONSE_MESSAGE = (
    "No response generated. Please try rephrasing your query or check the uploaded documents."
)


def format_sources_summary(info: SourcesInfo) -> str:
    """Citation summary appended to a response when retrieval was used."""
    return (
        f"\n\n[Sources Retrieved: {info.documents_retrieved_count} documents, "
        f"{info.retrieval_time_ms:g}ms]"
    )


async def _next_frame(frames: AsyncIterator[StreamFrame]) -> StreamFrame | None:
    try:
        return await frames.__anext__()
    except StopAsyncIteration:
        return None


class ChatSession:
    """A conversation with one assistant on behalf of one identity.

    The session keeps:
    - A bounded memory of recent turns, sent as context with each request
    - The cached credential set and tool registry for the assistant
    - At most one in-flight turn; submitting again supersedes it

    Each call to ``submit`` returns an async iterator of SessionEvents that
    ends when the turn completes, fails, or is superseded.
    """

    def __init__(
        self,
        session_id: str,
        identity: Identity,
        assistant: AssistantConfig,
        backend: StreamingBackend,
        credential_resolver: CredentialResolver,
        history: HistoryRecorder,
        registry_client: httpx.AsyncClient | None = None,
        tool_resolver: ToolSchemaResolver | None = None,
        idle_timeout: float | None = DEFAULT_IDLE_TIMEOUT,
    ):
        self.session_id = session_id
        self.identity = identity
        self.assistant = assistant
        self.memory = ConversationMemory()
        self.messages: list[Turn] = []
        self.created_at = datetime.now()
        self.last_activity = datetime.now()
        self.collection_name: str | None = None

        # Per-session selections applied to the next request
        self.selected_tool_config_id: str | None = None
        self.web_search_enabled = False
        self.user_documents: list[str] = []

        self._backend = backend
        self._credential_resolver = credential_resolver
        self._history = history
        self._registry_client = registry_client
        self._tool_resolver = tool_resolver or ToolSchemaResolver()
        self._idle_timeout = idle_timeout

        self._api_keys: dict[str, str] = {}
        self._tool_registry: dict[str, ToolConfig] = {}
        self._state = SessionState.IDLE
        self._generation = 0
        self._task: asyncio.Task | None = None
        self._queue: asyncio.Queue[SessionEvent | None] | None = None
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        """Whether the session can accept messages."""
        return not self._closed

    @property
    def is_processing(self) -> bool:
        """Whether a turn is in flight."""
        return self._state in (SessionState.AWAITING_STREAM, SessionState.STREAMING)

    @property
    def tool_configs(self) -> list[ToolConfig]:
        return list(self._tool_registry.values())

    # =========================================================================
    # Setup
    # =========================================================================

    async def initialize(self, restore_history: bool = False) -> None:
        """Prepare the session for its first turn.

        Resolves credentials, loads tool configurations when the assistant
        uses tools, optionally restores the stored conversation, and tells the
        backend the assistant was opened. Every step degrades on failure.
        """
        api_keys = await self._resolve_credentials()

        if self.assistant.mcp_enabled:
            await self.load_tool_configs()

        if restore_history:
            await self.restore_history()

        self.collection_name = await self._backend.notify_opened(
            self.identity, self.assistant, api_keys
        )
        logger.info(
            f"Chat session {self.session_id} initialized for assistant {self.assistant.id} "
            f"(providers: {sorted(api_keys)}, tool configs: {len(self._tool_registry)})"
        )

    async def load_tool_configs(self) -> None:
        """Load the tool registry visible to this session's identity."""
        if self._registry_client is None:
            return
        try:
            configs = await fetch_tool_configs(self._registry_client, self.identity)
        except ConfigResolutionError as e:
            logger.warning(f"Tool registry unavailable for session {self.session_id}: {e}")
            configs = []
        self.set_tool_configs(configs)

    def set_tool_configs(self, configs: Iterable[ToolConfig]) -> None:
        self._tool_registry = build_registry(configs)

    def select_tool_config(self, config_id: str | None) -> None:
        self.selected_tool_config_id = config_id or None

    def set_web_search(self, enabled: bool) -> None:
        self.web_search_enabled = enabled

    def set_user_documents(self, documents: Iterable[str]) -> None:
        self.user_documents = list(documents)

    async def restore_history(self) -> int:
        """Seed the conversation from the history store.

        Returns:
            Number of turns loaded.
        """
        turns = await self._history.load_conversation()
        self.messages = list(turns)
        self.memory.clear()
        self.memory.extend(turns[-MEMORY_CAPACITY:])
        logger.info(f"Restored {len(turns)} message(s) for session {self.session_id}")
        return len(turns)

    # =========================================================================
    # Turns
    # =========================================================================

    def submit(self, message: str) -> AsyncIterator[SessionEvent]:
        """Start a turn and return the events it emits.

        Any turn still in flight is superseded: its transport is closed and
        frames it would still deliver are discarded.

        Raises:
            ValueError: If the message is empty.
            RuntimeError: If the session is closed.
        """
        text = message.strip()
        if not text:
            raise ValueError("Message must not be empty")
        if self._closed:
            raise RuntimeError("Session is closed")

        self._supersede()
        self._generation += 1
        generation = self._generation
        queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue()
        self._queue = queue
        self.last_activity = datetime.now()

        context = self.memory.window()
        user_turn = Turn(role=ChatRole.USER, content=text)
        self.memory.append(user_turn)
        self.messages.append(user_turn)
        self._history.save(user_turn)

        self._emit(generation, SessionEvent(event="message_submitted", turn=user_turn))
        self._set_state(generation, SessionState.AWAITING_STREAM)

        self._task = asyncio.create_task(self._run_turn(generation, user_turn, context))
        return self._relay(queue)

    async def send(self, message: str) -> Turn | None:
        """Submit a message and wait for the assistant turn.

        Returns:
            The finalized assistant turn, or None if the turn was superseded.
        """
        final: Turn | None = None
        async for event in self.submit(message):
            if event.event in ("message_complete", "error"):
                final = event.turn
        return final

    def new_chat(self) -> None:
        """Forget the conversation and start over."""
        self._supersede()
        self._generation += 1
        self.memory.clear()
        self.messages.clear()
        self.user_documents = []
        self._state = SessionState.IDLE
        logger.info(f"Started new chat in session {self.session_id}")

    async def _relay(self, queue: asyncio.Queue[SessionEvent | None]) -> AsyncGenerator[SessionEvent, None]:
        while True:
            event = await queue.get()
            if event is None:
                return
            yield event

    async def _run_turn(
        self,
        generation: int,
        user_turn: Turn,
        context: tuple[Turn, ...],
    ) -> None:
        buffer = ""
        streaming = False

        try:
            request = await self._build_request(user_turn, context)
            if generation != self._generation:
                return

            async with self._backend.stream(request) as chunks:
                frames = StreamDecoder().decode(chunks)
                try:
                    while True:
                        try:
                            frame = await asyncio.wait_for(
                                _next_frame(frames), timeout=self._idle_timeout
                            )
                        except asyncio.TimeoutError:
                            raise StreamTimeoutError(self._idle_timeout or 0) from None

                        if frame is None or generation != self._generation:
                            break

                        if isinstance(frame, ContentFrame):
                            if not streaming:
                                streaming = True
                                self._set_state(generation, SessionState.STREAMING)
                            buffer += frame.data
                            self._emit(generation, SessionEvent(event="response_delta", text=frame.data))
                        elif isinstance(frame, SourcesInfoFrame):
                            summary = format_sources_summary(frame.data)
                            buffer += summary
                            self._emit(generation, SessionEvent(event="sources_info", text=summary))
                        elif isinstance(frame, ErrorFrame):
                            raise UpstreamError(frame.error)
                        elif isinstance(frame, DoneFrame):
                            break
                finally:
                    await frames.aclose()

            if generation != self._generation:
                return
            if not buffer:
                logger.warning(f"Stream ended with no content in session {self.session_id}")
                raise EmptyStreamError(EMPTY_RESPONSE_MESSAGE)

            turn = Turn(role=ChatRole.ASSISTANT, content=buffer)
            self._finalize(generation, turn, SessionState.COMPLETED)

        except asyncio.CancelledError:
            logger.info(f"Turn superseded in session {self.session_id}")
            raise
        except ChatSessionError as e:
            self._fail(generation, e)
        except Exception as e:
            logger.exception(f"Unexpected error in chat turn: {e}")
            self._fail(generation, TransportError(str(e) or type(e).__name__))
        finally:
            if generation == self._generation and self._queue is not None:
                self._queue.put_nowait(None)

    async def _build_request(self, user_turn: Turn, context: tuple[Turn, ...]) -> ChatStreamRequest:
        api_keys = await self._resolve_credentials()
        capabilities = self.assistant.capabilities

        mcp_enabled = bool(self.assistant.mcp_enabled and self.selected_tool_config_id)
        mcp_schema: str | None = None
        if mcp_enabled:
            schema = self._tool_resolver.resolve(self.selected_tool_config_id, self._tool_registry)
            if schema is not None:
                mcp_schema = json.dumps(schema)

        recent = [*context, user_turn][-MEMORY_CAPACITY:]

        return ChatStreamRequest(
            message=user_turn.content,
            gpt_id=self.assistant.id,
            user_email=self.identity.email,
            gpt_name=self.assistant.name,
            history=[ContextMessage(role=t.role, content=t.content) for t in recent],
            memory=[
                MemoryMessage(role=t.role, content=t.content, timestamp=t.timestamp.isoformat())
                for t in context
            ],
            user_documents=list(self.user_documents),
            use_hybrid_search=capabilities.hybrid_search,
            system_prompt=self.assistant.instructions or None,
            web_search_enabled=self.web_search_enabled and capabilities.web_browsing,
            api_keys=api_keys,
            mcp_enabled=mcp_enabled,
            mcp_schema=mcp_schema,
        )

    async def _resolve_credentials(self) -> dict[str, str]:
        """Return a snapshot of the cached credentials, resolving if empty."""
        if not self._api_keys:
            self._api_keys = await self._credential_resolver.resolve(self.identity)
        return dict(self._api_keys)

    def _fail(self, generation: int, error: ChatSessionError) -> None:
        if isinstance(error, EmptyStreamError):
            content = str(error)
        else:
            content = f"Error: {error}"
        logger.error(f"Chat turn failed in session {self.session_id} ({error.kind}): {error}")
        turn = Turn(role=ChatRole.ASSISTANT, content=content, is_error=True)
        self._finalize(generation, turn, SessionState.ERRORED, error_kind=error.kind)

    def _finalize(
        self,
        generation: int,
        turn: Turn,
        state: SessionState,
        error_kind: str | None = None,
    ) -> None:
        if generation != self._generation:
            logger.debug(f"Discarding result of superseded turn in session {self.session_id}")
            return

        self.memory.append(turn)
        self.messages.append(turn)
        self._history.save(turn)
        self.last_activity = datetime.now()

        self._set_state(generation, state)
        event = "error" if error_kind else "message_complete"
        self._emit(generation, SessionEvent(event=event, turn=turn, error_kind=error_kind))

    def _set_state(self, generation: int, state: SessionState) -> None:
        if generation != self._generation:
            return
        self._state = state
        self._emit(generation, SessionEvent(event="state_changed", state=state))

    def _emit(self, generation: int, event: SessionEvent) -> None:
        if generation == self._generation and self._queue is not None:
            self._queue.put_nowait(event)

    def _supersede(self) -> None:
        """Abort the in-flight turn and end its event iterator."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info(f"Superseding in-flight turn in session {self.session_id}")
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self) -> None:
        """Abort any in-flight turn and wait for pending history saves."""
        self._closed = True
        task = self._task
        self._supersede()
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._history.drain()
        logger.info(f"Chat session {self.session_id} closed")

    def get_info(self) -> dict[str, Any]:
        """Get session information."""
        return {
            "session_id": self.session_id,
            "assistant_id": self.assistant.id,
            "user_id": self.identity.user_id,
            "state": self._state.value,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "message_count": len(self.messages),
            "memory_size": len(self.memory),
            "is_active": self.is_active,
            "is_processing": self.is_processing,
        }


def new_session_id() -> str:
    return str(uuid.uuid4())[:12]
