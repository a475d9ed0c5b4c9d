"""
Conversation memory.

Keeps a bounded rolling window of recent turns per conversation. Memory is
process-local and is lost on restart.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Tuple

VALID_ROLES = frozenset({"system", "user", "assistant"})


@dataclass(frozen=True)
class ConversationTurn:
    """A single chat turn as sent to the model."""
    role: str
    content: str

    def __post_init__(self):
        if self.role not in VALID_ROLES:
            raise ValueError(f"Invalid turn role: {self.role}")

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class ConversationMemory:
    """Per-conversation FIFO windows of at most 2 x memory_turns turns."""

    def __init__(self, memory_turns: int):
        if memory_turns < 0:
            raise ValueError("memory_turns cannot be negative")
        self.memory_turns = memory_turns
        self._windows: Dict[str, Deque[ConversationTurn]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def max_turns(self) -> int:
        return self.memory_turns * 2

    def append(self, conversation_id: str, role: str, content: str) -> None:
        """Append a turn, evicting the oldest ones past the cap."""
        turn = ConversationTurn(role=role, content=content)
        window = self._windows.get(conversation_id)
        if window is None:
            window = deque(maxlen=self.max_turns)
            self._windows[conversation_id] = window
        window.append(turn)

    def get(self, conversation_id: str) -> Tuple[ConversationTurn, ...]:
        """Return a read-only snapshot of the window, oldest first."""
        return tuple(self._windows.get(conversation_id, ()))

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock serializing exchanges within one conversation."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock
