"""
Tests for RAG retrieval: scoring, thresholds, degradation and pruning.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from charachat.models import CharacterMemory, MemoryType, Importance
from charachat.services.memory_store import MemoryStore
from charachat.services.rag_retrieval import (
    RAGRetrievalService,
    RetrievalConfig,
    fallback_persona,
    recency_factor,
)

from conftest import FixedEmbedder, days_ago


QUERY = [1.0, 0.0, 0.0]


def _vector(similarity: float):
    """Unit vector with the given cosine similarity to QUERY"""
    return [similarity, (1.0 - similarity ** 2) ** 0.5, 0.0]


def _config(**overrides):
    values = dict(max_results=3, min_similarity=0.7, weight_emotional=True, boost_recent=True, recency_floor=0.1)
    values.update(overrides)
    return RetrievalConfig(**values)


class TestRecencyFactor:
    """Test the recency damping factor."""

    def test_fresh_memory_is_near_one(self):
        """A memory created now should score a recency of one."""
        now = datetime.utcnow()
        assert recency_factor(now, now, 0.1) == pytest.approx(1.0)

    def test_fifteen_days_is_half(self):
        """Half the recency window should give half the factor."""
        now = datetime.utcnow()
        assert recency_factor(now - timedelta(days=15), now, 0.1) == pytest.approx(0.5)

    def test_old_memory_is_clamped_at_floor(self):
        """Very old memories should be clamped at the floor."""
        now = datetime.utcnow()
        assert recency_factor(now - timedelta(days=365), now, 0.1) == 0.1


class TestGetCharacterContext:
    """Test context retrieval, ranking and degradation."""

    def setup_method(self):
        """Set up test fixtures."""
        self.embedder = FixedEmbedder(default=QUERY)
        self.service = RAGRetrievalService(self.embedder, _config())

    @pytest.mark.asyncio
    async def test_similarity_floor_excludes_weak_matches(self, db, character):
        """Matches under min_similarity should be excluded."""
        MemoryStore.add(db, character.id, "strong", MemoryType.FACTUAL_KNOWLEDGE, embedding=_vector(0.95))
        MemoryStore.add(db, character.id, "weak", MemoryType.FACTUAL_KNOWLEDGE, embedding=_vector(0.5))

        context = await self.service.get_character_context_for_llm(db, character.id, "anything")

        assert [m.content for m in context.relevant_memories] == ["strong"]
        assert all(m.similarity >= 0.7 for m in context.relevant_memories)
        assert context.degraded is False
        assert context.total_memories == 2

    @pytest.mark.asyncio
    async def test_result_cap(self, db, character):
        """Results should be capped at max_results, overridable per call."""
        for i in range(6):
            MemoryStore.add(db, character.id, f"memory {i}", MemoryType.CONVERSATION, embedding=_vector(0.9))

        context = await self.service.get_character_context_for_llm(db, character.id, "anything")
        assert len(context.relevant_memories) == 3

        context = await self.service.get_character_context_for_llm(db, character.id, "anything", max_results=5)
        assert len(context.relevant_memories) == 5

    @pytest.mark.asyncio
    async def test_importance_and_emotion_change_ranking(self, db, character):
        """Importance and emotional weight should lift a slightly weaker match."""
        MemoryStore.add(db, character.id, "plain", MemoryType.CONVERSATION, embedding=_vector(0.9),
                        importance=Importance.LOW, emotional_weight=0.0)
        MemoryStore.add(db, character.id, "vivid", MemoryType.EMOTIONAL_EVENT, embedding=_vector(0.85),
                        importance=Importance.HIGH, emotional_weight=0.9)

        context = await self.service.get_character_context_for_llm(db, character.id, "anything")
        assert [m.content for m in context.relevant_memories] == ["vivid", "plain"]

    @pytest.mark.asyncio
    async def test_recent_memory_beats_old_one(self, db, character):
        """A recent memory should outrank an old one of equal similarity."""
        MemoryStore.add(db, character.id, "old", MemoryType.CONVERSATION, embedding=_vector(0.9),
                        created_at=days_ago(200))
        MemoryStore.add(db, character.id, "new", MemoryType.CONVERSATION, embedding=_vector(0.9))

        context = await self.service.get_character_context_for_llm(db, character.id, "anything")
        assert [m.content for m in context.relevant_memories] == ["new", "old"]
        assert context.relevant_memories[1].score > 0

    @pytest.mark.asyncio
    async def test_equal_scores_put_newest_first(self, db, character):
        """Memories with identical scores should be ordered newest first."""
        service = RAGRetrievalService(self.embedder, _config(boost_recent=False))
        MemoryStore.add(db, character.id, "older", MemoryType.CONVERSATION, embedding=_vector(0.9),
                        importance=Importance.MEDIUM, emotional_weight=0.5, created_at=days_ago(5))
        MemoryStore.add(db, character.id, "newer", MemoryType.CONVERSATION, embedding=_vector(0.9),
                        importance=Importance.MEDIUM, emotional_weight=0.5, created_at=days_ago(1))

        context = await service.get_character_context_for_llm(db, character.id, "anything")

        assert [m.content for m in context.relevant_memories] == ["newer", "older"]
        assert context.relevant_memories[0].score == context.relevant_memories[1].score

    @pytest.mark.asyncio
    async def test_memory_type_filter(self, db, character):
        """memory_types should restrict the candidates."""
        MemoryStore.add(db, character.id, "bio", MemoryType.BIO_CHUNK, embedding=_vector(0.95))
        MemoryStore.add(db, character.id, "chat", MemoryType.CONVERSATION, embedding=_vector(0.95))

        context = await self.service.get_character_context_for_llm(
            db, character.id, "anything", memory_types=[MemoryType.CONVERSATION]
        )
        assert [m.content for m in context.relevant_memories] == ["chat"]

    @pytest.mark.asyncio
    async def test_uses_core_persona_when_present(self, db, character):
        """The stored core persona should be used when present."""
        character.core_persona_summary = "Aria is a quiet oracle."
        db.commit()

        context = await self.service.get_character_context_for_llm(db, character.id, "hello")
        assert context.core_persona == "Aria is a quiet oracle."

    @pytest.mark.asyncio
    async def test_falls_back_to_generic_persona(self, db, character):
        """A character without a core persona should get the generic one."""
        context = await self.service.get_character_context_for_llm(db, character.id, "hello")
        assert context.core_persona == fallback_persona("Aria")
        assert context.relevant_memories == []

    @pytest.mark.asyncio
    async def test_embedding_failure_degrades_instead_of_raising(self, db, character):
        """An embedding failure should give a degraded context, not an exception."""
        self.embedder.embed = AsyncMock(side_effect=RuntimeError("provider down"))

        context = await self.service.get_character_context_for_llm(db, character.id, "hello")

        assert context.degraded is True
        assert "provider down" in context.degraded_reason
        assert context.relevant_memories == []
        assert context.core_persona == fallback_persona("Aria")

    @pytest.mark.asyncio
    async def test_missing_character_degrades(self, db):
        """An unknown character should give a degraded context with the generic persona."""
        context = await self.service.get_character_context_for_llm(db, "missing", "hello")
        assert context.degraded is True
        assert context.core_persona == fallback_persona(None)

    @pytest.mark.asyncio
    async def test_search_memories_returns_empty_on_failure(self, db, character):
        """search_memories() should return an empty list when embedding fails."""
        self.embedder.embed = AsyncMock(side_effect=RuntimeError("provider down"))
        assert await self.service.search_memories(db, character.id, "hello") == []

    @pytest.mark.asyncio
    async def test_degraded_context_rolls_back_session(self, db, character):
        """A failed retrieval should roll the session back before degrading."""
        self.embedder.embed = AsyncMock(side_effect=RuntimeError("provider down"))
        db.rollback = Mock(wraps=db.rollback)

        context = await self.service.get_character_context_for_llm(db, character.id, "hello")

        assert context.degraded is True
        db.rollback.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_search_rolls_back_session(self, db, character):
        """A failed search should roll the session back and return nothing."""
        db.query = Mock(side_effect=RuntimeError("database is locked"))
        db.rollback = Mock()

        assert await self.service.search_memories(db, character.id, "hello") == []
        db.rollback.assert_called_once()


class TestStoreMemory:
    """Test storing new memories."""

    @pytest.mark.asyncio
    async def test_store_memory_embeds_and_persists(self, db, character):
        """store_memory() should embed the text and persist all fields."""
        embedder = FixedEmbedder(vectors={"We watched the eclipse": [0.0, 1.0, 0.0]})
        service = RAGRetrievalService(embedder, _config())

        memory_id = await service.store_memory(
            db, character.id, "We watched the eclipse", MemoryType.EMOTIONAL_EVENT,
            emotional_weight=0.8, importance=Importance.HIGH, location="rooftop", topics=["sky"],
        )

        record = db.get(CharacterMemory, memory_id)
        assert record.embedding == [0.0, 1.0, 0.0]
        assert record.memory_type == MemoryType.EMOTIONAL_EVENT
        assert record.location == "rooftop"
        assert record.topics == ["sky"]

    @pytest.mark.asyncio
    async def test_store_memory_propagates_embedding_errors(self, db, character):
        """store_memory() should raise when embedding fails."""
        embedder = FixedEmbedder()
        embedder.embed = AsyncMock(side_effect=RuntimeError("provider down"))
        service = RAGRetrievalService(embedder, _config())

        with pytest.raises(RuntimeError):
            await service.store_memory(db, character.id, "text", MemoryType.CONVERSATION)

    @pytest.mark.asyncio
    async def test_invalid_emotional_weight_is_rejected(self, db, character):
        """An emotional weight outside 0..1 should raise ValueError."""
        service = RAGRetrievalService(FixedEmbedder(), _config())
        with pytest.raises(ValueError):
            await service.store_memory(db, character.id, "text", MemoryType.CONVERSATION, emotional_weight=1.5)


class TestPruneMemories:
    """Test the two-pass memory pruning."""

    def setup_method(self):
        """Set up test fixtures."""
        self.service = RAGRetrievalService(FixedEmbedder(), _config())

    def test_old_low_importance_removed_high_kept(self, db, character):
        """Old low-importance memories should be pruned while high ones stay."""
        for i in range(3):
            MemoryStore.add(db, character.id, f"low {i}", MemoryType.CONVERSATION, embedding=QUERY,
                            importance=Importance.LOW, emotional_weight=0.1, created_at=days_ago(120))
        for i in range(2):
            MemoryStore.add(db, character.id, f"high {i}", MemoryType.CONVERSATION, embedding=QUERY,
                            importance=Importance.HIGH, emotional_weight=0.1, created_at=days_ago(120))

        deleted = self.service.prune_memories(db, character.id, older_than_days=90)

        assert deleted == 3
        remaining = [m.content for m in MemoryStore.list_for_character(db, character.id)]
        assert sorted(remaining) == ["high 0", "high 1"]

    def test_recent_or_emotional_low_memories_survive_age_pass(self, db, character):
        """Recent or emotionally heavy low memories should survive the age pass."""
        MemoryStore.add(db, character.id, "recent", MemoryType.CONVERSATION,
                        importance=Importance.LOW, emotional_weight=0.1, created_at=days_ago(10))
        MemoryStore.add(db, character.id, "heavy", MemoryType.CONVERSATION,
                        importance=Importance.LOW, emotional_weight=0.6, created_at=days_ago(120))

        assert self.service.prune_memories(db, character.id, older_than_days=90) == 0
        assert MemoryStore.count(db, character.id) == 2

    def test_overflow_removes_oldest_low_tier_only(self, db, character):
        """The overflow pass should remove the oldest low-tier memories, never bio chunks."""
        MemoryStore.add(db, character.id, "bio", MemoryType.BIO_CHUNK, importance=Importance.LOW,
                        emotional_weight=0.1, created_at=days_ago(50))
        MemoryStore.add(db, character.id, "oldest", MemoryType.CONVERSATION, importance=Importance.LOW,
                        emotional_weight=0.5, created_at=days_ago(40))
        MemoryStore.add(db, character.id, "middle", MemoryType.CONVERSATION, importance=Importance.LOW,
                        emotional_weight=0.5, created_at=days_ago(30))
        MemoryStore.add(db, character.id, "medium", MemoryType.CONVERSATION, importance=Importance.MEDIUM,
                        emotional_weight=0.5, created_at=days_ago(60))
        MemoryStore.add(db, character.id, "high", MemoryType.CONVERSATION, importance=Importance.HIGH,
                        emotional_weight=0.5, created_at=days_ago(70))

        deleted = self.service.prune_memories(db, character.id, max_memories=3, older_than_days=90)

        assert deleted == 2
        remaining = sorted(m.content for m in MemoryStore.list_for_character(db, character.id))
        assert remaining == ["bio", "high", "medium"]

    def test_overflow_with_medium_ceiling_never_touches_high(self, db, character):
        """A medium ceiling should still leave high memories alone."""
        for i in range(3):
            MemoryStore.add(db, character.id, f"high {i}", MemoryType.CONVERSATION,
                            importance=Importance.HIGH, created_at=days_ago(100 + i))
        MemoryStore.add(db, character.id, "medium", MemoryType.CONVERSATION,
                        importance=Importance.MEDIUM, created_at=days_ago(1))

        deleted = self.service.prune_memories(
            db, character.id, max_memories=1, min_importance=Importance.MEDIUM, older_than_days=90
        )

        assert deleted == 1
        assert MemoryStore.count(db, character.id) == 3

    def test_errors_are_swallowed(self, db, character):
        """Database errors during pruning should be logged and return 0."""
        db.query = Mock(side_effect=RuntimeError("database is locked"))
        assert self.service.prune_memories(db, character.id) == 0


class TestConfigAndStats:
    """Test runtime retrieval config and memory statistics."""

    def test_update_config_validates_keys(self):
        """update_config() should apply known keys and reject unknown ones."""
        service = RAGRetrievalService(FixedEmbedder(), _config())
        service.update_config(max_results=5)
        assert service.get_config()["max_results"] == 5
        with pytest.raises(ValueError):
            service.update_config(not_an_option=True)

    def test_stats(self, db, character):
        """get_memory_stats() should report counts, breakdown and average weight."""
        service = RAGRetrievalService(FixedEmbedder(), _config())
        MemoryStore.add(db, character.id, "a", MemoryType.CONVERSATION, embedding=QUERY, emotional_weight=0.2)
        MemoryStore.add(db, character.id, "b", MemoryType.BIO_CHUNK, emotional_weight=0.6)

        stats = service.get_memory_stats(db, character.id)

        assert stats["total_memories"] == 2
        assert stats["memory_type_breakdown"]["conversation"] == 1
        assert stats["memory_type_breakdown"]["bio_chunk"] == 1
        assert stats["embedded_memories"] == 1
        assert stats["average_emotional_weight"] == pytest.approx(0.4)
