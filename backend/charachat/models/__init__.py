# Import Base from database first
from ..database import Base

# Import all models to ensure they're registered with SQLAlchemy
from .character import Character
from .memory import CharacterMemory, MemoryType, Importance

__all__ = [
    "Base",
    "Character",
    "CharacterMemory", "MemoryType", "Importance",
]
