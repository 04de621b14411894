"""
Database model for character long-term memory

Each record holds one piece of text plus its embedding. Bio chunks are
replaced wholesale whenever the character is re-ingested; other records are
only ever inserted or pruned.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Float, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base
import enum


class MemoryType(str, enum.Enum):
    """Kinds of memory a character can hold"""
    BIO_CHUNK = "bio_chunk"
    CONVERSATION = "conversation"
    EMOTIONAL_EVENT = "emotional_event"
    FACTUAL_KNOWLEDGE = "factual_knowledge"


class Importance(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return IMPORTANCE_ORDER.index(self)


IMPORTANCE_ORDER = [Importance.LOW, Importance.MEDIUM, Importance.HIGH]


class CharacterMemory(Base):
    __tablename__ = "character_memories"

    id = Column(Integer, primary_key=True, index=True)

    # References
    character_id = Column(String(36), ForeignKey("characters.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(100), nullable=True, index=True)

    # Content
    content = Column(Text, nullable=False)
    summary = Column(Text)
    memory_type = Column(SQLEnum(MemoryType), nullable=False, index=True)
    embedding = Column(JSON(none_as_null=True), nullable=True)  # List of floats, null until computed

    # Weighting
    emotional_weight = Column(Float, default=0.5)  # 0.0 - 1.0
    importance = Column(SQLEnum(Importance), default=Importance.MEDIUM, nullable=False, index=True)

    # Context
    day_number = Column(Integer, default=1)
    time_of_day = Column(String(20))
    location = Column(String(200))
    related_characters = Column(JSON, default=list)
    topics = Column(JSON, default=list)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    character = relationship("Character", back_populates="memories")

    def to_dict(self):
        return {
            "id": self.id,
            "character_id": self.character_id,
            "content": self.content,
            "memory_type": self.memory_type.value if self.memory_type else None,
            "emotional_weight": self.emotional_weight,
            "importance": self.importance.value if self.importance else None,
            "day_number": self.day_number,
            "time_of_day": self.time_of_day,
            "location": self.location,
            "related_characters": self.related_characters or [],
            "topics": self.topics or [],
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<CharacterMemory(id={self.id}, character_id={self.character_id}, memory_type={self.memory_type})>"
