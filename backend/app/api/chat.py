"""Chat API endpoints for multi-turn conversations."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from app.llm.chat.manager import get_session_manager, session_info
from app.llm.chat.models import (
    ChatSessionInfo,
    CreateChatSessionRequest,
    CreateChatSessionResponse,
    SessionEvent,
    SubmitMessageRequest,
    UpdateSessionSettingsRequest,
)
from app.llm.chat.session import ChatSession

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_session_or_404(session_id: str) -> ChatSession:
    session = get_session_manager().get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("/chat/sessions")
async def create_chat_session(request: CreateChatSessionRequest) -> CreateChatSessionResponse:
    """Open a chat session for an assistant.

    The session keeps the rolling context window between messages and can
    be used with the WebSocket endpoint for interactive chat.
    """
    manager = get_session_manager()
    session = await manager.create_session(
        identity=request.identity,
        assistant=request.assistant,
        restore_history=request.restore_history,
    )

    return CreateChatSessionResponse(
        session_id=session.session_id,
        assistant_id=session.assistant.id,
        created_at=session.created_at,
    )


@router.get("/chat/sessions")
async def list_chat_sessions(assistant_id: str | None = None) -> list[ChatSessionInfo]:
    """List active chat sessions, optionally for one assistant."""
    manager = get_session_manager()
    if assistant_id:
        return [session_info(s) for s in manager.get_sessions_for_assistant(assistant_id)]
    return manager.list_sessions()


@router.get("/chat/sessions/{session_id}")
async def get_chat_session(session_id: str) -> ChatSessionInfo:
    """Get information about a specific chat session."""
    return session_info(_get_session_or_404(session_id))


@router.delete("/chat/sessions/{session_id}")
async def close_chat_session(session_id: str) -> dict[str, str]:
    """Explicitly close a chat session."""
    _get_session_or_404(session_id)
    await get_session_manager().close_session(session_id)
    return {"status": "closed", "session_id": session_id}


@router.post("/chat/sessions/{session_id}/new-chat")
async def start_new_chat(session_id: str) -> ChatSessionInfo:
    """Clear the conversation and start over with the same assistant."""
    session = _get_session_or_404(session_id)
    session.new_chat()
    return session_info(session)


@router.put("/chat/sessions/{session_id}/settings")
async def update_session_settings(
    session_id: str,
    request: UpdateSessionSettingsRequest,
) -> dict[str, Any]:
    """Update the selections applied to the next turns."""
    session = _get_session_or_404(session_id)

    fields = request.model_fields_set
    if "tool_config_id" in fields:
        session.select_tool_config(request.tool_config_id)
    if request.web_search_enabled is not None:
        session.set_web_search(request.web_search_enabled)
    if request.user_documents is not None:
        session.set_user_documents(request.user_documents)

    return {
        "session_id": session_id,
        "tool_config_id": session.selected_tool_config_id,
        "web_search_enabled": session.web_search_enabled,
        "user_documents": session.user_documents,
    }


@router.post("/chat/sessions/{session_id}/messages")
async def submit_message_stream(session_id: str, request: SubmitMessageRequest) -> StreamingResponse:
    """Submit one message and stream the turn's events as SSE.

    Events use the same format as the WebSocket endpoint.
    """
    session = _get_session_or_404(session_id)

    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")

    events = session.submit(message)

    async def event_generator():
        async for event in events:
            yield f"data: {json.dumps(event.to_payload())}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.websocket("/chat/ws/{session_id}")
async def chat_websocket(websocket: WebSocket, session_id: str) -> None:
    """WebSocket endpoint for multi-turn chat.

    Message format from client:
    {"message": "user message text"}

    Events sent to client:
    {"event": "message_submitted", "turn": {...}}
    {"event": "state_changed", "state": "..."}
    {"event": "response_delta", "text": "..."}
    {"event": "sources_info", "text": "..."}
    {"event": "message_complete", "turn": {...}}
    {"event": "error", "turn": {...}, "error_kind": "..."}
    """
    await websocket.accept()

    session = get_session_manager().get_session(session_id)
    if not session:
        await websocket.close(code=4004, reason="Session not found")
        return

    logger.info(f"WebSocket connected for session {session_id}")

    async def relay(events: AsyncIterator[SessionEvent]) -> None:
        try:
            async for event in events:
                await websocket.send_json(event.to_payload())
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info(f"Stopped relaying events for session {session_id}: {e}")

    relay_task: asyncio.Task | None = None

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "message": "Invalid JSON"})
                continue

            message = str(data.get("message", "")).strip() if isinstance(data, dict) else ""
            if not message:
                await websocket.send_json({"event": "error", "message": "Empty message"})
                continue

            if not session.is_active:
                await websocket.send_json({
                    "event": "error",
                    "message": "Session is no longer active",
                })
                break

            # A message sent mid-turn supersedes it; the old relay ends on its own
            relay_task = asyncio.create_task(relay(session.submit(message)))

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for session {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        # The turn itself keeps running so it is still recorded to history
        if relay_task is not None:
            relay_task.cancel()


@router.get("/chat/stats")
async def get_chat_stats() -> dict[str, Any]:
    """Get chat session statistics (admin endpoint)."""
    return get_session_manager().get_stats()
