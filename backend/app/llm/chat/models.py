"""Pydantic models for chat sessions."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class ChatRole(str, Enum):
    """Role of a chat message sender."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SessionState(str, Enum):
    """Lifecycle state of a single conversation turn."""

    IDLE = "idle"
    AWAITING_STREAM = "awaiting_stream"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"


class Turn(BaseModel):
    """A single message in a conversation. Immutable once created."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    role: ChatRole
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    is_error: bool = False

    class Config:
        frozen = True
        use_enum_values = True


# =============================================================================
# Stream frames
# =============================================================================


class SourcesInfo(BaseModel):
    """Retrieval statistics reported by the backend."""

    documents_retrieved_count: int = 0
    retrieval_time_ms: float = 0


class ContentFrame(BaseModel):
    type: Literal["content"] = "content"
    data: str = ""


class SourcesInfoFrame(BaseModel):
    type: Literal["sources_info"] = "sources_info"
    data: SourcesInfo = Field(default_factory=SourcesInfo)


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    error: str = "Unknown streaming error"


class DoneFrame(BaseModel):
    type: Literal["done"] = "done"


StreamFrame = Annotated[
    ContentFrame | SourcesInfoFrame | ErrorFrame | DoneFrame,
    Field(discriminator="type"),
]

stream_frame_adapter: TypeAdapter[StreamFrame] = TypeAdapter(StreamFrame)


# =============================================================================
# Session configuration (resolved by external collaborators)
# =============================================================================


class Identity(BaseModel):
    """The resolved caller a session acts on behalf of."""

    user_id: str
    email: str = "unknown_user"
    auth_token: str | None = None


class AssistantCapabilities(BaseModel):
    web_browsing: bool = False
    hybrid_search: bool = False


class AssistantConfig(BaseModel):
    """Assistant definition as resolved by the assistant registry."""

    id: str
    name: str = "AI Assistant"
    model: str = "gpt-4o-mini"
    instructions: str | None = None
    capabilities: AssistantCapabilities = Field(default_factory=AssistantCapabilities)
    mcp_enabled: bool = False
    knowledge_file_urls: list[str] = Field(default_factory=list)


class ToolConfig(BaseModel):
    """A stored tool configuration. ``schema_json`` is the raw JSON document."""

    id: str = Field(alias="_id")
    name: str = ""
    schema_json: str = Field(default="", alias="schema")

    class Config:
        populate_by_name = True


# =============================================================================
# Outbound payloads
# =============================================================================


class ContextMessage(BaseModel):
    role: str
    content: str


class MemoryMessage(BaseModel):
    role: str
    content: str
    timestamp: str


class ChatStreamRequest(BaseModel):
    """Body posted to the inference backend to start a streamed turn."""

    message: str
    gpt_id: str
    user_email: str
    gpt_name: str
    history: list[ContextMessage] = Field(default_factory=list)
    memory: list[MemoryMessage] = Field(default_factory=list)
    user_documents: list[str] = Field(default_factory=list)
    use_hybrid_search: bool = False
    system_prompt: str | None = None
    web_search_enabled: bool = False
    api_keys: dict[str, str] = Field(default_factory=dict)
    mcp_enabled: bool = False
    mcp_schema: str | None = None


class HistorySaveRequest(BaseModel):
    """Body posted to the history store for one turn."""

    userId: str
    gptId: str
    gptName: str
    message: str
    role: str
    model: str


# =============================================================================
# Emitted events
# =============================================================================


class SessionEvent(BaseModel):
    """An event emitted by a session while processing a turn.

    Events:
    - message_submitted: the user turn was accepted (``turn``)
    - state_changed: the session moved to ``state``
    - response_delta: new response text arrived (``text``)
    - sources_info: a citation summary was appended (``text``)
    - message_complete: the assistant turn is final (``turn``)
    - error: the turn failed (``turn``, ``error_kind``)
    """

    event: str
    state: SessionState | None = None
    text: str | None = None
    turn: Turn | None = None
    error_kind: str | None = None

    class Config:
        use_enum_values = True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# =============================================================================
# Service API models
# =============================================================================


class ChatSessionInfo(BaseModel):
    """Information about an active chat session."""

    session_id: str
    assistant_id: str
    user_id: str
    state: SessionState
    created_at: datetime
    last_activity: datetime
    message_count: int
    memory_size: int
    is_active: bool = True

    class Config:
        use_enum_values = True


class CreateChatSessionRequest(BaseModel):
    """Request to open a chat session for an assistant."""

    identity: Identity
    assistant: AssistantConfig
    restore_history: bool = Field(
        default=False,
        description="Seed the context window from the stored conversation",
    )


class CreateChatSessionResponse(BaseModel):
    """Response after creating a chat session."""

    session_id: str
    assistant_id: str
    created_at: datetime


class SubmitMessageRequest(BaseModel):
    message: str


class UpdateSessionSettingsRequest(BaseModel):
    """Per-session selections applied to subsequent turns."""

    tool_config_id: str | None = None
    web_search_enabled: bool | None = None
    user_documents: list[str] | None = None
