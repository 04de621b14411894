"""
Memory Store

SQLAlchemy-backed persistence for character memory records plus a nearest
neighbour lookup. Vectors live in a JSON column and are scored with numpy,
so any SQLAlchemy database works.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple, Dict, Any

import numpy as np
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.memory import CharacterMemory, MemoryType, Importance

logger = logging.getLogger(__name__)


class MemoryStore:
    """Stateless accessors over the character_memories table"""

    @staticmethod
    def add(
        db: Session,
        character_id: str,
        content: str,
        memory_type: MemoryType,
        embedding: Optional[List[float]] = None,
        emotional_weight: float = 0.5,
        importance: Importance = Importance.MEDIUM,
        day_number: int = 1,
        time_of_day: Optional[str] = None,
        location: Optional[str] = None,
        related_characters: Optional[List[str]] = None,
        topics: Optional[List[str]] = None,
        session_id: Optional[str] = None,
        summary: Optional[str] = None,
        created_at: Optional[datetime] = None,
        commit: bool = True,
    ) -> CharacterMemory:
        if not 0.0 <= emotional_weight <= 1.0:
            raise ValueError(f"emotional_weight must be between 0 and 1, got {emotional_weight}")

        record = CharacterMemory(
            character_id=character_id,
            content=content,
            summary=summary,
            memory_type=MemoryType(memory_type),
            embedding=embedding,
            emotional_weight=emotional_weight,
            importance=Importance(importance),
            day_number=day_number,
            time_of_day=time_of_day,
            location=location,
            related_characters=related_characters or [],
            topics=topics or [],
            session_id=session_id,
        )
        if created_at is not None:
            record.created_at = created_at

        db.add(record)
        if commit:
            db.commit()
            db.refresh(record)
        return record

    @staticmethod
    def delete_by_type(db: Session, character_id: str, memory_type: MemoryType, commit: bool = True) -> int:
        deleted = (
            db.query(CharacterMemory)
            .filter(CharacterMemory.character_id == character_id, CharacterMemory.memory_type == memory_type)
            .delete(synchronize_session=False)
        )
        if commit:
            db.commit()
        return deleted

    @staticmethod
    def delete_ids(db: Session, ids: Sequence[int]) -> int:
        if not ids:
            return 0
        deleted = (
            db.query(CharacterMemory)
            .filter(CharacterMemory.id.in_(list(ids)))
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted

    @staticmethod
    def count(db: Session, character_id: str, memory_type: Optional[MemoryType] = None) -> int:
        query = db.query(func.count(CharacterMemory.id)).filter(CharacterMemory.character_id == character_id)
        if memory_type is not None:
            query = query.filter(CharacterMemory.memory_type == memory_type)
        return query.scalar() or 0

    @staticmethod
    def list_for_character(db: Session, character_id: str) -> List[CharacterMemory]:
        return (
            db.query(CharacterMemory)
            .filter(CharacterMemory.character_id == character_id)
            .order_by(CharacterMemory.created_at.asc(), CharacterMemory.id.asc())
            .all()
        )

    @staticmethod
    def nearest(
        db: Session,
        character_id: str,
        query_vector: List[float],
        memory_types: Optional[Sequence[MemoryType]] = None,
    ) -> List[Tuple[CharacterMemory, float]]:
        """
        Cosine similarity of every embedded record against the query vector.

        Returns (record, similarity) pairs, most similar first. Records without
        an embedding or with a mismatched dimension are skipped.
        """
        query = db.query(CharacterMemory).filter(
            CharacterMemory.character_id == character_id,
            CharacterMemory.embedding.isnot(None),
        )
        if memory_types:
            query = query.filter(CharacterMemory.memory_type.in_([MemoryType(t) for t in memory_types]))
        records = [r for r in query.all() if r.embedding and len(r.embedding) == len(query_vector)]
        if not records:
            return []

        matrix = np.asarray([r.embedding for r in records], dtype=float)
        q = np.asarray(query_vector, dtype=float)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        dots = matrix @ q
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        order = np.argsort(-similarities, kind="stable")
        return [(records[i], float(similarities[i])) for i in order]

    @staticmethod
    def stats(db: Session, character_id: str) -> Dict[str, Any]:
        base = db.query(CharacterMemory).filter(CharacterMemory.character_id == character_id)

        breakdown = {t.value: 0 for t in MemoryType}
        for memory_type, count in (
            db.query(CharacterMemory.memory_type, func.count(CharacterMemory.id))
            .filter(CharacterMemory.character_id == character_id)
            .group_by(CharacterMemory.memory_type)
            .all()
        ):
            breakdown[MemoryType(memory_type).value] = count

        total = sum(breakdown.values())
        avg_weight = (
            db.query(func.avg(CharacterMemory.emotional_weight))
            .filter(CharacterMemory.character_id == character_id)
            .scalar()
        )
        oldest = base.order_by(CharacterMemory.created_at.asc()).first()
        newest = base.order_by(CharacterMemory.created_at.desc()).first()
        embedded = base.filter(CharacterMemory.embedding.isnot(None)).count()

        return {
            "total_memories": total,
            "memory_type_breakdown": breakdown,
            "has_embeddings": embedded > 0,
            "embedded_memories": embedded,
            "average_emotional_weight": round(float(avg_weight), 3) if avg_weight is not None else 0.0,
            "oldest_memory": oldest.created_at.isoformat() if oldest else None,
            "newest_memory": newest.created_at.isoformat() if newest else None,
        }
