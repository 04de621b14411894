"""
RAG Retrieval Service

Finds the memories most relevant to a live user message and packages them
with the character's core persona for prompt composition.

Scoring (per candidate record):
    base   = cosine(query, record)
    score  = base
             * (1 + emotional_weight)            if weight_emotional
             * {high: 1.3, medium: 1.0, low: 0.7}[importance]
             * max(floor, 1 - age_days / 30)     if boost_recent

Records whose base similarity is under min_similarity are dropped before
ranking. Retrieval never raises: on any failure the caller gets a
persona-only context flagged as degraded.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import settings
from ..models.character import Character
from ..models.memory import CharacterMemory, MemoryType, Importance, IMPORTANCE_ORDER
from .embedding import EmbeddingProvider
from .memory_store import MemoryStore

logger = logging.getLogger(__name__)

IMPORTANCE_MULTIPLIER = {
    Importance.HIGH: 1.3,
    Importance.MEDIUM: 1.0,
    Importance.LOW: 0.7,
}

RECENCY_WINDOW_DAYS = 30.0


class RetrievalConfig(BaseModel):
    max_results: int = Field(default=3, ge=1)
    min_similarity: float = Field(default=0.7, ge=-1.0, le=1.0)
    memory_types: List[MemoryType] = Field(default_factory=lambda: list(MemoryType))
    weight_emotional: bool = True
    boost_recent: bool = True
    recency_floor: float = Field(default=0.1, ge=0.0, le=1.0)

    @classmethod
    def from_settings(cls, config=settings) -> "RetrievalConfig":
        return cls(
            max_results=config.rag_max_results,
            min_similarity=config.rag_min_similarity,
            weight_emotional=config.rag_weight_emotional,
            boost_recent=config.rag_boost_recent,
            recency_floor=config.rag_recency_floor,
        )


@dataclass
class RetrievedMemory:
    id: int
    content: str
    memory_type: MemoryType
    importance: Importance
    emotional_weight: float
    created_at: datetime
    similarity: float
    score: float

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["memory_type"] = self.memory_type.value
        data["importance"] = self.importance.value
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        data["similarity"] = round(self.similarity, 4)
        data["score"] = round(self.score, 4)
        return data


@dataclass
class RAGContext:
    core_persona: str
    relevant_memories: List[RetrievedMemory] = field(default_factory=list)
    retrieval_time_ms: float = 0.0
    search_query: str = ""
    total_memories: int = 0
    degraded: bool = False
    degraded_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "core_persona": self.core_persona,
            "relevant_memories": [m.to_dict() for m in self.relevant_memories],
            "retrieval_time_ms": round(self.retrieval_time_ms, 2),
            "search_query": self.search_query,
            "total_memories": self.total_memories,
            "degraded": self.degraded,
            "degraded_reason": self.degraded_reason,
        }


def fallback_persona(name: Optional[str]) -> str:
    return f"You are {name or 'Assistant'}. Stay in character."


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def recency_factor(created_at: datetime, now: datetime, floor: float) -> float:
    age_days = (now - _naive_utc(created_at)).total_seconds() / 86400.0
    return max(floor, 1.0 - age_days / RECENCY_WINDOW_DAYS)


def score_memory(record: CharacterMemory, similarity: float, options: RetrievalConfig, now: datetime) -> float:
    score = similarity
    if options.weight_emotional:
        score *= 1.0 + (record.emotional_weight or 0.0)
    score *= IMPORTANCE_MULTIPLIER.get(Importance(record.importance), 1.0)
    if options.boost_recent and record.created_at is not None:
        score *= recency_factor(record.created_at, now, options.recency_floor)
    return score


class RAGRetrievalService:
    """Vector retrieval, memory storage and pruning for characters"""

    def __init__(self, embedder: EmbeddingProvider, config: Optional[RetrievalConfig] = None):
        self.embedder = embedder
        self.config = config or RetrievalConfig.from_settings()

    def _options(self, overrides: Dict[str, Any]) -> RetrievalConfig:
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self.config
        return RetrievalConfig(**{**self.config.model_dump(), **overrides})

    async def _rank(
        self, db: Session, character_id: str, query_text: str, options: RetrievalConfig
    ) -> List[RetrievedMemory]:
        query_vector = await self.embedder.embed(query_text)
        candidates = MemoryStore.nearest(db, character_id, query_vector, options.memory_types)

        now = datetime.utcnow()
        ranked = []
        for record, similarity in candidates:
            if similarity < options.min_similarity:
                continue
            ranked.append(RetrievedMemory(
                id=record.id,
                content=record.content,
                memory_type=MemoryType(record.memory_type),
                importance=Importance(record.importance),
                emotional_weight=record.emotional_weight or 0.0,
                created_at=record.created_at,
                similarity=similarity,
                score=score_memory(record, similarity, options, now),
            ))

        ranked.sort(key=lambda m: (m.score, _naive_utc(m.created_at)), reverse=True)
        return ranked[:options.max_results]

    async def get_character_context_for_llm(
        self, db: Session, character_id: str, query_text: str, **overrides
    ) -> RAGContext:
        started = time.perf_counter()
        persona = fallback_persona(None)

        try:
            options = self._options(overrides)
            character = db.query(Character).filter(Character.id == character_id).first()
            if not character:
                raise LookupError(f"Character not found: {character_id}")
            persona = character.core_persona_summary or fallback_persona(character.name)

            memories = await self._rank(db, character_id, query_text, options)
            elapsed = (time.perf_counter() - started) * 1000
            logger.info(
                f"[RAG] {character.name}: {len(memories)} memories retrieved in {elapsed:.1f}ms"
            )
            return RAGContext(
                core_persona=persona,
                relevant_memories=memories,
                retrieval_time_ms=elapsed,
                search_query=query_text,
                total_memories=MemoryStore.count(db, character_id),
            )
        except Exception as e:
            db.rollback()
            logger.warning(f"[RAG] Retrieval degraded for {character_id}: {e}")
            return RAGContext(
                core_persona=persona,
                retrieval_time_ms=(time.perf_counter() - started) * 1000,
                search_query=query_text,
                degraded=True,
                degraded_reason=str(e),
            )

    async def search_memories(
        self, db: Session, character_id: str, query_text: str, **overrides
    ) -> List[RetrievedMemory]:
        try:
            return await self._rank(db, character_id, query_text, self._options(overrides))
        except Exception as e:
            db.rollback()
            logger.error(f"[RAG] Memory search failed for {character_id}: {e}")
            return []

    async def store_memory(
        self,
        db: Session,
        character_id: str,
        content: str,
        memory_type: MemoryType,
        emotional_weight: float = 0.5,
        importance: Importance = Importance.MEDIUM,
        **metadata,
    ) -> int:
        """Embed and persist one memory. Returns the new record id."""
        vector = await self.embedder.embed(content)
        record = MemoryStore.add(
            db,
            character_id=character_id,
            content=content,
            memory_type=memory_type,
            embedding=vector,
            emotional_weight=emotional_weight,
            importance=importance,
            **metadata,
        )
        logger.debug(f"[RAG] Stored {MemoryType(memory_type).value} memory {record.id} for {character_id}")
        return record.id

    def prune_memories(
        self,
        db: Session,
        character_id: str,
        max_memories: int = 1000,
        min_importance: Importance = Importance.LOW,
        older_than_days: int = 90,
    ) -> int:
        """
        Two-phase pruning. Returns the number of deleted records, 0 on error.

        Phase 1 removes old, low-importance, emotionally light memories.
        Phase 2 runs only while the character is still over max_memories and
        removes the oldest memories whose importance is at or below
        min_importance. High-importance memories and bio chunks are never
        touched by phase 2.
        """
        try:
            cutoff = datetime.utcnow() - timedelta(days=older_than_days)
            stale_ids = [
                row.id for row in db.query(CharacterMemory.id).filter(
                    CharacterMemory.character_id == character_id,
                    CharacterMemory.importance == Importance.LOW,
                    CharacterMemory.emotional_weight < 0.3,
                    CharacterMemory.created_at < cutoff,
                    CharacterMemory.memory_type != MemoryType.BIO_CHUNK,
                ).all()
            ]
            deleted = MemoryStore.delete_ids(db, stale_ids)

            remaining = MemoryStore.count(db, character_id)
            excess = remaining - max_memories
            if excess > 0:
                ceiling = Importance(min_importance).rank
                tiers = [t for t in IMPORTANCE_ORDER if t.rank <= ceiling and t != Importance.HIGH]
                if tiers:
                    overflow_ids = [
                        row.id for row in db.query(CharacterMemory.id).filter(
                            CharacterMemory.character_id == character_id,
                            CharacterMemory.importance.in_(tiers),
                            CharacterMemory.memory_type != MemoryType.BIO_CHUNK,
                        ).order_by(CharacterMemory.created_at.asc(), CharacterMemory.id.asc()).limit(excess).all()
                    ]
                    deleted += MemoryStore.delete_ids(db, overflow_ids)

            if deleted:
                logger.info(f"[RAG] Pruned {deleted} memories for {character_id}")
            return deleted
        except Exception as e:
            db.rollback()
            logger.error(f"[RAG] Pruning failed for {character_id}: {e}")
            return 0

    def get_memory_stats(self, db: Session, character_id: str) -> Dict[str, Any]:
        return MemoryStore.stats(db, character_id)

    def update_config(self, **changes) -> RetrievalConfig:
        unknown = set(changes) - set(RetrievalConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown retrieval options: {', '.join(sorted(unknown))}")
        self.config = RetrievalConfig(**{**self.config.model_dump(), **changes})
        logger.info(f"[RAG] Config updated: {changes}")
        return self.config

    def get_config(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    async def health_check(self) -> Dict[str, Any]:
        embedding = await self.embedder.health_check()
        return {
            "status": embedding["status"],
            "embedding": embedding,
            "config": self.get_config(),
        }
