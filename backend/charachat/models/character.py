from sqlalchemy import Column, String, Text, DateTime, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


class Character(Base):
    """
    Persistent character profile

    full_bio and core_persona_summary are derived by ingestion and overwritten
    on every run.
    """
    __tablename__ = "characters"

    id = Column(String(36), primary_key=True, default=_new_id, index=True)
    owner_id = Column(String(100), index=True)
    name = Column(String(100), nullable=False)

    # Identity
    archetype = Column(String(100))
    chatbot_role = Column(String(100))
    source_material = Column(String(200))
    conceptual_age = Column(String(50))

    # Appearance
    description = Column(Text)
    attire = Column(Text)
    colors = Column(JSON, default=list)
    features = Column(Text)

    # Communication
    tone = Column(JSON, default=list)
    pacing = Column(String(100))
    inflection = Column(String(100))
    vocabulary = Column(String(100))

    # Personality
    primary_traits = Column(JSON, default=list)
    secondary_traits = Column(JSON, default=list)
    quirks = Column(JSON, default=list)
    interruption_tolerance = Column(String(20), default="medium")

    # Goals
    primary_motivation = Column(Text)
    core_goal = Column(Text)
    secondary_goals = Column(JSON, default=list)

    # Interaction style
    core_abilities = Column(JSON, default=list)
    approach = Column(String(200))
    patience = Column(String(100))
    demeanor = Column(String(200))
    adaptability = Column(String(100))

    # Signature phrases
    greeting = Column(Text)
    affirmation = Column(Text)
    comfort = Column(Text)

    # Boundaries
    forbidden_topics = Column(JSON, default=list)
    interaction_policy = Column(Text)
    conflict_resolution = Column(Text)

    # Derived by ingestion
    full_bio = Column(Text)
    core_persona_summary = Column(Text)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    memories = relationship("CharacterMemory", back_populates="character", cascade="all, delete-orphan", passive_deletes=True)

    def __repr__(self):
        return f"<Character(id={self.id}, name='{self.name}')>"
