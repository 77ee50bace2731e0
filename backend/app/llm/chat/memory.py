"""Bounded conversation memory used to build the context window."""

from collections import deque
from collections.abc import Iterable

from app.llm.chat.models import Turn

# Number of most recent turns sent as context with each request
MEMORY_CAPACITY = 10


class ConversationMemory:
    """Ordered FIFO of the most recent turns.

    Appending past capacity evicts the oldest turn. The memory is owned by a
    single session and is never persisted itself.
    """

    def __init__(self, capacity: int = MEMORY_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._turns: deque[Turn] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._turns.maxlen or 0

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def extend(self, turns: Iterable[Turn]) -> None:
        """Append several turns; only the newest ``capacity`` are kept."""
        self._turns.extend(turns)

    def window(self) -> tuple[Turn, ...]:
        """Snapshot of the retained turns, oldest first."""
        return tuple(self._turns)

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)
