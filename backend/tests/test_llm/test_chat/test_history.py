"""Tests for HistoryRecorder."""

import asyncio
import logging

import httpx
import pytest

from app.llm.chat.history import SAVE_PATH, HistoryRecorder
from app.llm.chat.models import ChatRole, Turn


@pytest.fixture
def recorder(platform_client, identity, assistant) -> HistoryRecorder:
    return HistoryRecorder(platform_client, identity, assistant)


class TestHistoryRecorderSave:
    """Tests for fire-and-forget saves."""

    @pytest.mark.asyncio
    async def test_save_posts_turn(self, recorder, platform):
        recorder.save(Turn(role=ChatRole.USER, content="  hello  "))
        await recorder.drain()

        assert platform.saved == [{
            "userId": "user-1",
            "gptId": "gpt-1",
            "gptName": "Research Helper",
            "message": "hello",
            "role": "user",
            "model": "gpt-4o-mini",
        }]

    @pytest.mark.asyncio
    async def test_save_does_not_block(self, recorder, platform):
        task = recorder.save(Turn(role=ChatRole.ASSISTANT, content="answer"))

        assert task is not None
        assert recorder.pending_count == 1
        await recorder.drain()
        assert recorder.pending_count == 0
        assert len(platform.saved) == 1

    @pytest.mark.asyncio
    async def test_blank_message_skipped(self, recorder, platform):
        assert recorder.save(Turn(role=ChatRole.USER, content="   ")) is None
        await recorder.drain()
        assert platform.saved == []

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, recorder, platform, caplog):
        platform.save_response = 500

        task = recorder.save(Turn(role=ChatRole.ASSISTANT, content="answer"))
        await recorder.drain()

        assert task.result() is False
        assert "Error saving assistant message to history" in caplog.text

    @pytest.mark.asyncio
    async def test_closed_client_failure_is_logged(self, platform, identity, assistant, caplog):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(platform.handler), base_url="http://platform.test"
        )
        await client.aclose()
        recorder = HistoryRecorder(client, identity, assistant)

        with caplog.at_level(logging.ERROR, logger="app.llm.chat.history"):
            task = recorder.save(Turn(role=ChatRole.USER, content="hi"))
            await recorder.drain()

        assert task.exception() is None
        assert task.result() is False
        assert "Unexpected error saving user message to history" in caplog.text
        assert platform.saved == []

    @pytest.mark.asyncio
    async def test_single_attempt_on_failure(self, recorder, platform):
        platform.save_response = httpx.ConnectError("down", request=httpx.Request("POST", SAVE_PATH))

        recorder.save(Turn(role=ChatRole.USER, content="hi"))
        await recorder.drain()

        assert len(platform.calls(SAVE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_saves_keep_submission_order(self, recorder, platform):
        for i in range(3):
            recorder.save(Turn(role=ChatRole.USER, content=f"m{i}"))
        await recorder.drain()

        assert [s["message"] for s in platform.saved] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_drain_without_pending(self, recorder):
        await asyncio.wait_for(recorder.drain(), timeout=1)


class TestHistoryRecorderLoad:
    """Tests for loading a stored conversation."""

    @pytest.mark.asyncio
    async def test_load_conversation(self, recorder, platform):
        platform.conversation = {
            "success": True,
            "conversation": {
                "_id": "conv-1",
                "createdAt": "2026-01-01T10:00:00",
                "messages": [
                    {"role": "user", "content": "hi", "timestamp": "2026-01-01T10:00:01"},
                    {"role": "assistant", "content": "hello"},
                    {"role": "robot", "content": "ignored"},
                ],
            },
        }

        turns = await recorder.load_conversation()

        assert [(t.role, t.content) for t in turns] == [("user", "hi"), ("assistant", "hello")]
        assert turns[1].timestamp.year == 2026
        request = platform.requests[-1]
        assert request.url.path == "/api/chat-history/conversation/user-1/gpt-1"

    @pytest.mark.asyncio
    async def test_load_without_conversation(self, recorder, platform):
        platform.conversation = {"success": True, "conversation": None}
        assert await recorder.load_conversation() == []

    @pytest.mark.asyncio
    async def test_load_failure_returns_empty(self, recorder, platform):
        platform.conversation = 500
        assert await recorder.load_conversation() == []
