"""Fire-and-forget persistence of conversation turns."""

import asyncio
import logging
from datetime import datetime

import httpx

from app.llm.chat.models import AssistantConfig, ChatRole, HistorySaveRequest, Identity, Turn

logger = logging.getLogger(__name__)

SAVE_PATH = "/api/chat-history/save"
CONVERSATION_PATH = "/api/chat-history/conversation/{user_id}/{assistant_id}"


class HistoryRecorder:
    """Records each turn of one conversation to the external history store.

    ``save`` never blocks the caller: the request runs as a background task
    and is attempted exactly once. Failures are logged and dropped.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        identity: Identity,
        assistant: AssistantConfig,
    ):
        self._client = client
        self._identity = identity
        self._assistant = assistant
        self._pending: set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def save(self, turn: Turn) -> asyncio.Task | None:
        """Schedule a save of ``turn``. Returns the task, or None if skipped."""
        if not turn.content or not turn.content.strip():
            logger.warning(f"Not saving empty {turn.role} message for assistant {self._assistant.id}")
            return None

        payload = HistorySaveRequest(
            userId=self._identity.user_id,
            gptId=self._assistant.id,
            gptName=self._assistant.name or "AI Assistant",
            message=turn.content.strip(),
            role=str(turn.role),
            model=self._assistant.model or "gpt-4o-mini",
        )
        task = asyncio.create_task(self._post(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _post(self, payload: HistorySaveRequest) -> bool:
        try:
            response = await self._client.post(
                SAVE_PATH, json=payload.model_dump(), headers=self._headers()
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Error saving {payload.role} message to history: {e}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error saving {payload.role} message to history: {e}")
            return False

    async def drain(self) -> None:
        """Wait for all scheduled saves to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def load_conversation(self) -> list[Turn]:
        """Load the stored conversation for this identity and assistant.

        Returns:
            The stored turns in order, or an empty list on any failure.
        """
        path = CONVERSATION_PATH.format(
            user_id=self._identity.user_id, assistant_id=self._assistant.id
        )
        try:
            response = await self._client.get(path, headers=self._headers())
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to load conversation history: {e}")
            return []

        if not isinstance(body, dict) or not body.get("success"):
            return []
        conversation = body.get("conversation")
        if not isinstance(conversation, dict):
            return []

        created_at = conversation.get("createdAt")
        turns: list[Turn] = []
        for message in conversation.get("messages") or []:
            try:
                turns.append(
                    Turn(
                        role=ChatRole(message.get("role")),
                        content=message.get("content") or "",
                        timestamp=message.get("timestamp") or created_at or datetime.now(),
                    )
                )
            except ValueError as e:
                logger.warning(f"Skipping invalid history message: {e}")
        return turns

    def _headers(self) -> dict[str, str]:
        if self._identity.auth_token:
            return {"Authorization": f"Bearer {self._identity.auth_token}"}
        return {}
