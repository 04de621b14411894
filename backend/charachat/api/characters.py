from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, Field
import logging

from ..database import get_db
from ..dependencies import get_character_engine, get_ingestion_service, get_rag_service
from ..models import Character, MemoryType, Importance
from ..services.character_engine import CharacterEngine
from ..services.character_ingestion import CharacterIngestionService
from ..services.rag_retrieval import RAGRetrievalService

logger = logging.getLogger(__name__)

router = APIRouter()


class CharacterCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    owner_id: Optional[str] = None
    archetype: Optional[str] = None
    chatbot_role: Optional[str] = None
    source_material: Optional[str] = None
    conceptual_age: Optional[str] = None
    description: Optional[str] = None
    attire: Optional[str] = None
    colors: List[str] = []
    features: Optional[str] = None
    tone: List[str] = []
    pacing: Optional[str] = None
    inflection: Optional[str] = None
    vocabulary: Optional[str] = None
    primary_traits: List[str] = []
    secondary_traits: List[str] = []
    quirks: List[str] = []
    interruption_tolerance: str = "medium"
    primary_motivation: Optional[str] = None
    core_goal: Optional[str] = None
    secondary_goals: List[str] = []
    core_abilities: List[str] = []
    approach: Optional[str] = None
    patience: Optional[str] = None
    demeanor: Optional[str] = None
    adaptability: Optional[str] = None
    greeting: Optional[str] = None
    affirmation: Optional[str] = None
    comfort: Optional[str] = None
    forbidden_topics: List[str] = []
    interaction_policy: Optional[str] = None
    conflict_resolution: Optional[str] = None


class CharacterSummary(BaseModel):
    id: str
    name: str
    archetype: Optional[str]
    chatbot_role: Optional[str]
    has_full_bio: bool
    has_core_persona: bool


class MemoryCreate(BaseModel):
    content: str = Field(..., min_length=1)
    memory_type: MemoryType = MemoryType.CONVERSATION
    emotional_weight: float = Field(default=0.5, ge=0.0, le=1.0)
    importance: Importance = Importance.MEDIUM
    session_id: Optional[str] = None
    summary: Optional[str] = None
    location: Optional[str] = None
    topics: List[str] = []
    related_characters: List[str] = []


class PruneRequest(BaseModel):
    max_memories: int = Field(default=1000, ge=0)
    min_importance: Importance = Importance.LOW
    older_than_days: int = Field(default=90, ge=0)


class TypingUpdate(BaseModel):
    is_typing: bool


def _summary(character: Character) -> CharacterSummary:
    return CharacterSummary(
        id=character.id,
        name=character.name,
        archetype=character.archetype,
        chatbot_role=character.chatbot_role,
        has_full_bio=bool(character.full_bio),
        has_core_persona=bool(character.core_persona_summary),
    )


def _get_character_or_404(db: Session, character_id: str) -> Character:
    character = db.query(Character).filter(Character.id == character_id).first()
    if not character:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Character not found")
    return character


@router.get("/", response_model=List[CharacterSummary])
async def list_characters(skip: int = 0, limit: int = 50, db: Session = Depends(get_db)):
    characters = db.query(Character).order_by(Character.created_at.asc()).offset(skip).limit(limit).all()
    return [_summary(c) for c in characters]


@router.post("/", response_model=CharacterSummary, status_code=status.HTTP_201_CREATED)
async def create_character(character_data: CharacterCreate, db: Session = Depends(get_db)):
    """Create a character profile. Ingestion is a separate step."""
    character = Character(**character_data.model_dump())
    db.add(character)
    db.commit()
    db.refresh(character)
    logger.info(f"Created character {character.name} ({character.id})")
    return _summary(character)


@router.get("/{character_id}", response_model=CharacterSummary)
async def get_character(character_id: str, db: Session = Depends(get_db)):
    return _summary(_get_character_or_404(db, character_id))


@router.delete("/{character_id}")
async def delete_character(
    character_id: str,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
):
    """Delete a character, its memories and its in-memory history"""
    character = _get_character_or_404(db, character_id)
    db.delete(character)
    db.commit()
    await engine.clear_conversation_history_for_character(character_id)
    return {"message": "Character deleted successfully"}


# --- Ingestion ---

@router.post("/{character_id}/ingest")
async def ingest_character(
    character_id: str,
    db: Session = Depends(get_db),
    ingestion: CharacterIngestionService = Depends(get_ingestion_service),
):
    _get_character_or_404(db, character_id)
    result = await ingestion.ingest_character_bio(db, character_id)
    return result.to_dict()


@router.get("/{character_id}/ingestion-status")
async def get_ingestion_status(
    character_id: str,
    db: Session = Depends(get_db),
    ingestion: CharacterIngestionService = Depends(get_ingestion_service),
):
    _get_character_or_404(db, character_id)
    return ingestion.get_ingestion_status(db, character_id)


# --- Memories ---

@router.post("/{character_id}/memories", status_code=status.HTTP_201_CREATED)
async def create_memory(
    character_id: str,
    memory: MemoryCreate,
    db: Session = Depends(get_db),
    rag: RAGRetrievalService = Depends(get_rag_service),
):
    _get_character_or_404(db, character_id)
    try:
        memory_id = await rag.store_memory(
            db,
            character_id,
            memory.content,
            memory.memory_type,
            emotional_weight=memory.emotional_weight,
            importance=memory.importance,
            session_id=memory.session_id,
            summary=memory.summary,
            location=memory.location,
            topics=memory.topics,
            related_characters=memory.related_characters,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"[RAG] Failed to store memory for {character_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Embedding failed: {e}")
    return {"id": memory_id}


@router.get("/{character_id}/memories/search")
async def search_memories(
    character_id: str,
    query: str,
    max_results: Optional[int] = None,
    min_similarity: Optional[float] = None,
    memory_types: Optional[List[MemoryType]] = Query(default=None),
    db: Session = Depends(get_db),
    rag: RAGRetrievalService = Depends(get_rag_service),
):
    _get_character_or_404(db, character_id)
    memories = await rag.search_memories(
        db,
        character_id,
        query,
        max_results=max_results,
        min_similarity=min_similarity,
        memory_types=memory_types,
    )
    return {"query": query, "results": [m.to_dict() for m in memories]}


@router.post("/{character_id}/memories/prune")
async def prune_memories(
    character_id: str,
    request: Optional[PruneRequest] = None,
    db: Session = Depends(get_db),
    rag: RAGRetrievalService = Depends(get_rag_service),
):
    _get_character_or_404(db, character_id)
    request = request or PruneRequest()
    deleted = rag.prune_memories(
        db,
        character_id,
        max_memories=request.max_memories,
        min_importance=request.min_importance,
        older_than_days=request.older_than_days,
    )
    return {"deleted": deleted}


@router.get("/{character_id}/memories/stats")
async def get_memory_stats(
    character_id: str,
    db: Session = Depends(get_db),
    rag: RAGRetrievalService = Depends(get_rag_service),
):
    _get_character_or_404(db, character_id)
    return rag.get_memory_stats(db, character_id)


# --- Presence ---

@router.get("/{character_id}/state")
async def get_character_state(
    character_id: str,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
):
    _get_character_or_404(db, character_id)
    return engine.get_character_state(character_id).to_dict()


@router.put("/{character_id}/typing")
async def set_character_typing(
    character_id: str,
    update: TypingUpdate,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
):
    _get_character_or_404(db, character_id)
    return engine.set_character_typing(character_id, update.is_typing).to_dict()
