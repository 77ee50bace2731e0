"""Pytest configuration and fixtures."""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from app.config import ChatSettings
from app.llm.chat.backend import ASSISTANT_OPENED_PATH, CHAT_STREAM_PATH
from app.llm.chat.credentials import SYSTEM_KEYS_PATH, USER_KEYS_PATH, CredentialResolver
from app.llm.chat.history import SAVE_PATH, HistoryRecorder
from app.llm.chat.manager import ChatSessionManager, set_session_manager
from app.llm.chat.models import (
    AssistantCapabilities,
    AssistantConfig,
    ChatStreamRequest,
    Identity,
)
from app.llm.chat.session import ChatSession
from app.llm.chat.tool_schema import TOOL_CONFIGS_PATH
from app.main import app


def encode_sse(*payloads: dict[str, Any]) -> bytes:
    """Encode payloads the way the backend frames them."""
    return b"".join(f"data: {json.dumps(p)}\n\n".encode("utf-8") for p in payloads)


class PlatformStub:
    """In-memory stand-in for the platform API (credentials, history, tools).

    Each response attribute may be a JSON body, an HTTP status code, or an
    exception to raise from the transport.
    """

    def __init__(self) -> None:
        self.user_keys: Any = {"success": True, "apiKeys": {"openai": "user-key"}}
        self.system_keys: Any = {"success": True, "apiKeys": {"openai": "system-key"}}
        self.tool_configs: Any = {"success": True, "mcpConfigs": []}
        self.conversation: Any = {"success": False}
        self.save_response: Any = {"success": True}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == USER_KEYS_PATH:
            return self._respond(self.user_keys, request)
        if path == SYSTEM_KEYS_PATH:
            return self._respond(self.system_keys, request)
        if path == TOOL_CONFIGS_PATH:
            return self._respond(self.tool_configs, request)
        if path == SAVE_PATH:
            return self._respond(self.save_response, request)
        if path.startswith("/api/chat-history/conversation/"):
            return self._respond(self.conversation, request)
        return httpx.Response(404, json={"success": False})

    @staticmethod
    def _respond(value: Any, request: httpx.Request) -> httpx.Response:
        if isinstance(value, Exception):
            raise value
        if isinstance(value, int):
            return httpx.Response(value, request=request)
        return httpx.Response(200, json=value)

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    @property
    def saved(self) -> list[dict[str, Any]]:
        """Bodies of every history save request, in order."""
        return [json.loads(r.content) for r in self.calls(SAVE_PATH)]


class FakeBackend:
    """Scripted inference backend.

    Each call to ``stream`` consumes the next script: either an exception
    raised when opening, or a factory for the body's chunks.
    """

    def __init__(self) -> None:
        self._scripts: list[Exception | Callable[[], AsyncIterator[bytes]]] = []
        self.requests: list[ChatStreamRequest] = []
        self.closed: list[int] = []
        self.notifications: list[dict[str, str]] = []

    def script(
        self,
        *chunks: bytes,
        hold: asyncio.Event | None = None,
        after_hold: tuple[bytes, ...] = (),
        error: Exception | None = None,
    ) -> None:
        """Queue a response body.

        ``hold`` pauses the body after ``chunks`` until the event is set.
        ``error`` is raised once all chunks have been delivered.
        """
        async def body() -> AsyncIterator[bytes]:
            for chunk in chunks:
                yield chunk
            if hold is not None:
                await hold.wait()
                for chunk in after_hold:
                    yield chunk
            if error is not None:
                raise error

        self._scripts.append(body)

    def fail_open(self, error: Exception) -> None:
        self._scripts.append(error)

    @asynccontextmanager
    async def stream(self, request: ChatStreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        index = len(self.requests)
        self.requests.append(request)
        script = self._scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        try:
            yield script()
        finally:
            self.closed.append(index)

    async def notify_opened(
        self,
        identity: Identity,
        assistant: AssistantConfig,
        api_keys: dict[str, str],
    ) -> str | None:
        self.notifications.append(api_keys)
        return f"kb_{assistant.id}"


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="user-1", email="ada@example.com", auth_token="token-1")


@pytest.fixture
def assistant() -> AssistantConfig:
    return AssistantConfig(
        id="gpt-1",
        name="Research Helper",
        model="gpt-4o-mini",
        instructions="Answer briefly.",
        capabilities=AssistantCapabilities(web_browsing=True, hybrid_search=True),
    )


@pytest.fixture
def platform() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
async def platform_client(platform: PlatformStub) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(platform.handler),
        base_url="http://platform.test",
    ) as client:
        yield client


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_session(
    platform_client: httpx.AsyncClient,
    backend: FakeBackend,
    identity: Identity,
    assistant: AssistantConfig,
) -> Callable[..., ChatSession]:
    """Factory for sessions wired to the platform stub and fake backend."""

    def _make(
        assistant_config: AssistantConfig | None = None,
        idle_timeout: float | None = 5.0,
    ) -> ChatSession:
        config = assistant_config or assistant
        return ChatSession(
            session_id="test-session",
            identity=identity,
            assistant=config,
            backend=backend,
            credential_resolver=CredentialResolver(platform_client, retry_delay=0),
            history=HistoryRecorder(platform_client, identity, config),
            registry_client=platform_client,
            idle_timeout=idle_timeout,
        )

    return _make


@pytest.fixture
def sse() -> Callable[..., bytes]:
    """Encoder for event-stream bodies."""
    return encode_sse


class BackendStub:
    """MockTransport handler for the inference backend HTTP API.

    Turns stream ``chunks`` unless a body was queued in ``bodies``; a queued
    body may be an async iterator, which lets a test hold a stream open.
    """

    def __init__(self) -> None:
        self.chunks: list[dict[str, Any]] = [
            {"type": "content", "data": "Hi"},
            {"type": "content", "data": " there"},
            {"type": "done"},
        ]
        self.bodies: list[bytes | AsyncIterator[bytes]] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == CHAT_STREAM_PATH:
            body = self.bodies.pop(0) if self.bodies else encode_sse(*self.chunks)
            return httpx.Response(
                200,
                headers={"Content-Type": "text/event-stream"},
                content=body,
            )
        if request.url.path == ASSISTANT_OPENED_PATH:
            return httpx.Response(200, json={"collection_name": "kb_test"})
        return httpx.Response(404)


@pytest.fixture
def backend_stub() -> BackendStub:
    return BackendStub()


@pytest.fixture
async def manager(
    backend_stub: BackendStub,
    platform: PlatformStub,
) -> AsyncGenerator[ChatSessionManager, None]:
    """Session manager wired to the backend and platform stubs."""
    manager = ChatSessionManager(
        ChatSettings(idle_timeout_seconds=5.0),
        backend_client=httpx.AsyncClient(
            transport=httpx.MockTransport(backend_stub.handler),
            base_url="http://backend.test",
        ),
        platform_client=httpx.AsyncClient(
            transport=httpx.MockTransport(platform.handler),
            base_url="http://platform.test",
        ),
    )
    set_session_manager(manager)

    yield manager

    await manager.shutdown()
    set_session_manager(None)


@pytest.fixture
async def client(manager: ChatSessionManager) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
