"""
Tests for in-memory conversation history and character presence state.
"""

import asyncio

import pytest

from charachat.services.conversation_store import (
    CharacterStateStore,
    ConversationStore,
    ConversationTurn,
)


def _turn(content, role="user", character_id="c1", user_id="u1"):
    return ConversationTurn(character_id=character_id, user_id=user_id, content=content, role=role)


class TestConversationStore:
    """Test bounded per-user conversation history."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = ConversationStore(max_turns=50)

    @pytest.mark.asyncio
    async def test_keeps_newest_fifty_in_order(self):
        """History should keep the newest fifty turns in order."""
        for i in range(60):
            await self.store.append(_turn(f"message {i}", role="user" if i % 2 == 0 else "assistant"))

        history = self.store.get("c1", "u1")

        assert len(history) == 50
        assert history[0].content == "message 10"
        assert history[-1].content == "message 59"

    @pytest.mark.asyncio
    async def test_limit_returns_most_recent(self):
        """get() with a limit should return the most recent turns."""
        for i in range(5):
            await self.store.append(_turn(f"message {i}"))

        assert [t.content for t in self.store.get("c1", "u1", limit=2)] == ["message 3", "message 4"]
        assert self.store.get("c1", "u1", limit=0) == []

    @pytest.mark.asyncio
    async def test_histories_are_separate_per_user(self):
        """Each (character, user) pair should have its own history."""
        await self.store.append(_turn("from u1"))
        await self.store.append(_turn("from u2", user_id="u2"))

        assert [t.content for t in self.store.get("c1", "u1")] == ["from u1"]
        assert [t.content for t in self.store.get("c1", "u2")] == ["from u2"]
        assert self.store.get("c2", "u1") == []

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_all_kept(self):
        """Concurrent appends should all be kept."""
        await asyncio.gather(*(self.store.append(_turn(f"m{i}")) for i in range(20)))
        assert len(self.store.get("c1", "u1")) == 20

    @pytest.mark.asyncio
    async def test_clear_one_conversation(self):
        """clear() should drop one conversation and its lock."""
        await self.store.append(_turn("a"))
        await self.store.append(_turn("b", user_id="u2"))

        assert await self.store.clear("c1", "u1") == 1
        assert self.store.get("c1", "u1") == []
        assert len(self.store.get("c1", "u2")) == 1
        assert await self.store.clear("c1", "u1") == 0
        assert ("c1", "u1") not in self.store._locks

    @pytest.mark.asyncio
    async def test_clear_for_character(self):
        """clear_for_character() should drop every conversation and lock for a character."""
        await self.store.append(_turn("a"))
        await self.store.append(_turn("b", user_id="u2"))
        await self.store.append(_turn("c", character_id="c2"))

        assert await self.store.clear_for_character("c1") == 2
        assert self.store.active_characters() == 1
        assert self.store.total_turns() == 1
        assert ("c1", "u1") not in self.store._locks
        assert ("c1", "u2") not in self.store._locks
        assert ("c2", "u1") in self.store._locks

    def test_turn_to_dict(self):
        """ConversationTurn.to_dict() should return proper structure."""
        data = _turn("hello").to_dict()
        assert data["role"] == "user"
        assert data["id"].startswith("msg_")
        assert "timestamp" in data


class TestCharacterStateStore:
    """Test character presence flags."""

    def setup_method(self):
        """Set up test fixtures."""
        self.states = CharacterStateStore()

    def test_state_is_created_on_first_touch(self):
        """get() should create the state on first touch; peek() should not."""
        assert self.states.peek("c1") is None
        state = self.states.get("c1")
        assert state.is_typing is False
        assert self.states.peek("c1") is state

    def test_update(self):
        """update() should set known fields."""
        self.states.update("c1", is_typing=True, mood="curious")
        state = self.states.get("c1")
        assert state.is_typing is True
        assert state.mood == "curious"
        assert state.to_dict()["last_active"] is None

    def test_unknown_field_is_rejected(self):
        """update() should reject unknown fields."""
        with pytest.raises(AttributeError):
            self.states.update("c1", hunger=3)

    def test_session_duration(self):
        """session_duration_minutes() should be zero for unknown characters."""
        assert self.states.session_duration_minutes("c1") == 0.0
        self.states.get("c1")
        assert self.states.session_duration_minutes("c1") >= 0.0
