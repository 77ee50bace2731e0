"""HTTP transport to the inference backend."""

import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import httpx

from app.llm.chat.errors import TransportError
from app.llm.chat.models import AssistantConfig, ChatStreamRequest, Identity

logger = logging.getLogger(__name__)

CHAT_STREAM_PATH = "/chat-stream"
ASSISTANT_OPENED_PATH = "/gpt-opened"


class StreamingBackend(Protocol):
    """What a session needs from the inference backend."""

    def stream(self, request: ChatStreamRequest) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Open a turn; the context yields the raw body chunks."""
        ...

    async def notify_opened(
        self,
        identity: Identity,
        assistant: AssistantConfig,
        api_keys: dict[str, str],
    ) -> str | None:
        ...


class ChatBackend:
    """Posts turns to the backend's event-stream endpoint."""

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    @asynccontextmanager
    async def stream(self, request: ChatStreamRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        """Open a streamed turn and yield the raw body chunks.

        Closing the context closes the HTTP response.

        Raises:
            TransportError: If the request fails, the backend answers with an
                error status, or the connection drops while reading.
        """
        try:
            async with self._client.stream(
                "POST",
                CHAT_STREAM_PATH,
                json=request.model_dump(mode="json"),
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.is_error:
                    raise TransportError(
                        f"Server responded with {response.status_code}: {response.reason_phrase}",
                        retriable=response.status_code >= 500,
                    )
                logger.debug(f"Opened chat stream for assistant {request.gpt_id}")
                yield response.aiter_bytes()
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__, retriable=True) from e

    async def notify_opened(
        self,
        identity: Identity,
        assistant: AssistantConfig,
        api_keys: dict[str, str],
    ) -> str | None:
        """Tell the backend an assistant was opened so it can prepare retrieval.

        Returns:
            The knowledge collection name reported by the backend, if any.
        """
        file_urls = [
            url for url in assistant.knowledge_file_urls
            if url.startswith(("http://", "https://"))
        ]
        hybrid = assistant.capabilities.hybrid_search
        payload = {
            "user_email": identity.email,
            "gpt_name": assistant.name or "Unnamed GPT",
            "gpt_id": assistant.id,
            "file_urls": file_urls,
            "use_hybrid_search": hybrid,
            "schema": {
                "model": assistant.model,
                "instructions": assistant.instructions or "",
                "capabilities": assistant.capabilities.model_dump(),
                "use_hybrid_search": hybrid,
            },
            "api_keys": api_keys,
        }

        try:
            response = await self._client.post(ASSISTANT_OPENED_PATH, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to notify backend that assistant {assistant.id} opened: {e}")
            return None

        if isinstance(data, dict):
            return data.get("collection_name")
        return None
