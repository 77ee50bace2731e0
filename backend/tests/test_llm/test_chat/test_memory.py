"""Tests for ConversationMemory."""

import pytest

from app.llm.chat.memory import MEMORY_CAPACITY, ConversationMemory
from app.llm.chat.models import ChatRole, Turn


def make_turn(index: int) -> Turn:
    role = ChatRole.USER if index % 2 == 0 else ChatRole.ASSISTANT
    return Turn(role=role, content=f"message {index}")


class TestConversationMemory:
    """Tests for the bounded context window."""

    def test_starts_empty(self):
        memory = ConversationMemory()
        assert len(memory) == 0
        assert memory.window() == ()
        assert memory.capacity == MEMORY_CAPACITY == 10

    def test_keeps_insertion_order(self):
        memory = ConversationMemory()
        turns = [make_turn(i) for i in range(3)]
        for turn in turns:
            memory.append(turn)

        assert memory.window() == tuple(turns)

    def test_evicts_oldest_first(self):
        memory = ConversationMemory()
        turns = [make_turn(i) for i in range(12)]
        for turn in turns:
            memory.append(turn)

        window = memory.window()
        assert len(window) == 10
        assert window[0].content == "message 2"
        assert window[-1].content == "message 11"

    def test_window_never_exceeds_capacity(self):
        """Every prefix of a long append sequence keeps the newest turns."""
        memory = ConversationMemory()
        appended: list[Turn] = []
        for i in range(25):
            turn = make_turn(i)
            memory.append(turn)
            appended.append(turn)

            window = memory.window()
            assert len(window) <= 10
            assert list(window) == appended[-10:]

    def test_window_is_a_snapshot(self):
        memory = ConversationMemory()
        memory.append(make_turn(0))
        window = memory.window()

        memory.append(make_turn(1))

        assert len(window) == 1
        assert len(memory) == 2

    def test_clear(self):
        memory = ConversationMemory()
        for i in range(5):
            memory.append(make_turn(i))

        memory.clear()

        assert len(memory) == 0
        assert memory.window() == ()

    def test_extend_keeps_newest(self):
        memory = ConversationMemory()
        memory.extend(make_turn(i) for i in range(15))

        assert [t.content for t in memory.window()] == [f"message {i}" for i in range(5, 15)]

    def test_custom_capacity(self):
        memory = ConversationMemory(capacity=2)
        for i in range(4):
            memory.append(make_turn(i))

        assert [t.content for t in memory.window()] == ["message 2", "message 3"]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ConversationMemory(capacity=0)


class TestTurn:
    """Tests for the Turn model."""

    def test_turn_is_immutable(self):
        turn = make_turn(0)
        with pytest.raises(Exception):
            turn.content = "changed"  # type: ignore[misc]

    def test_turn_defaults(self):
        turn = Turn(role=ChatRole.ASSISTANT, content="hi")
        assert turn.role == "assistant"
        assert turn.is_error is False
        assert turn.id
        assert turn.timestamp is not None

    def test_turn_ids_are_unique(self):
        assert make_turn(0).id != make_turn(0).id
