"""
Per-process conversation history and character presence state

History is keyed by (character_id, user_id), keeps the newest turns only and
is lost on restart. Mutations for one key are serialized with an asyncio.Lock.
"""

import asyncio
import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

HistoryKey = Tuple[str, str]


@dataclass
class ConversationTurn:
    character_id: str
    user_id: str
    content: str
    role: str  # "user" or "assistant"
    timestamp: datetime = field(default_factory=datetime.utcnow)
    id: str = field(default_factory=lambda: f"msg_{uuid.uuid4().hex[:12]}")

    def to_dict(self):
        return {
            "id": self.id,
            "character_id": self.character_id,
            "user_id": self.user_id,
            "content": self.content,
            "role": self.role,
            "timestamp": self.timestamp.isoformat(),
        }


class ConversationStore:
    def __init__(self, max_turns: int = 50):
        self.max_turns = max_turns
        self._history: Dict[HistoryKey, Deque[ConversationTurn]] = {}
        self._locks: Dict[HistoryKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def append(self, turn: ConversationTurn) -> None:
        key = (turn.character_id, turn.user_id)
        async with self._locks[key]:
            history = self._history.get(key)
            if history is None:
                history = deque(maxlen=self.max_turns)
                self._history[key] = history
            history.append(turn)

    def get(self, character_id: str, user_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        turns = list(self._history.get((character_id, user_id), ()))
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else []
        return turns

    async def clear(self, character_id: str, user_id: str) -> int:
        key = (character_id, user_id)
        async with self._locks[key]:
            removed = len(self._history.pop(key, ()))
        self._locks.pop(key, None)
        return removed

    async def clear_for_character(self, character_id: str) -> int:
        removed = 0
        for key in [k for k in self._history if k[0] == character_id]:
            async with self._locks[key]:
                removed += len(self._history.pop(key, ()))
            self._locks.pop(key, None)
        return removed

    def active_characters(self) -> int:
        return len({character_id for character_id, _ in self._history})

    def total_turns(self) -> int:
        return sum(len(turns) for turns in self._history.values())


@dataclass
class CharacterState:
    character_id: str
    is_typing: bool = False
    mood: Optional[str] = None
    location: Optional[str] = None
    last_active: Optional[datetime] = None
    session_started: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self):
        return {
            "character_id": self.character_id,
            "is_typing": self.is_typing,
            "mood": self.mood,
            "location": self.location,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "session_started": self.session_started.isoformat(),
        }


class CharacterStateStore:
    """Presence flags per character, created on first touch"""

    def __init__(self):
        self._states: Dict[str, CharacterState] = {}

    def get(self, character_id: str) -> CharacterState:
        state = self._states.get(character_id)
        if state is None:
            state = CharacterState(character_id=character_id)
            self._states[character_id] = state
        return state

    def peek(self, character_id: str) -> Optional[CharacterState]:
        return self._states.get(character_id)

    def update(self, character_id: str, **changes) -> CharacterState:
        state = self.get(character_id)
        for key, value in changes.items():
            if not hasattr(state, key):
                raise AttributeError(f"Unknown character state field: {key}")
            setattr(state, key, value)
        return state

    def session_duration_minutes(self, character_id: str) -> float:
        state = self._states.get(character_id)
        if state is None:
            return 0.0
        return (datetime.utcnow() - state.session_started).total_seconds() / 60.0
