"""
Character Ingestion Service

Turns a character profile into retrievable memory:

1. Render a labeled full biography from the profile fields
2. Condense a core persona summary (LLM, with a template fallback)
3. Chunk the biography and embed every chunk
4. Replace the character's bio_chunk memories with the new chunks

Failures are collected on the IngestionResult instead of raised, so a batch
ingest keeps going past one broken character.
"""

import logging
import math
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..models.character import Character
from ..models.memory import CharacterMemory, MemoryType, Importance
from .embedding import EmbeddingProvider, chunk_text
from .memory_store import MemoryStore
from .llm.client import LLMClient

logger = logging.getLogger(__name__)

# Sentences in a generated persona that talk about looks are dropped
APPEARANCE_PATTERN = re.compile(
    r"\b(appearance|hair|eyes|skin|tall|wears?|wearing|dressed|attire|outfit|clothing|"
    r"robes?|cloak|complexion|physical|looks like)\b",
    re.IGNORECASE,
)

PERSONA_PROMPT = """You are an expert character designer. Create a condensed, {max_words}-word personality summary for an AI character that will be used as a system prompt.

Character Data:
- Name: {name}
- Archetype: {archetype}
- Role: {role}
- Primary Traits: {traits}
- Speaking Tone: {tone}
- Approach: {approach}
- Demeanor: {demeanor}
- Vocabulary: {vocabulary}

Biography:
{bio_excerpt}

Requirements:
1. Focus ONLY on core personality, speaking style, and primary motivations
2. Use clear, direct language optimized for AI understanding
3. Keep it concise but comprehensive enough to maintain character consistency
4. Do NOT include physical appearance details (those are handled separately)
5. Maximum {max_words} words

Core Persona Summary:"""


@dataclass
class IngestionConfig:
    chunk_size: int = 800
    chunk_overlap: int = 100
    core_persona_max_words: int = 200
    generate_core_persona: bool = True

    @classmethod
    def from_settings(cls, config=settings) -> "IngestionConfig":
        return cls(
            chunk_size=config.ingestion_chunk_size,
            chunk_overlap=config.ingestion_chunk_overlap,
            core_persona_max_words=config.core_persona_max_words,
            generate_core_persona=config.generate_core_persona,
        )


@dataclass
class IngestionResult:
    character_id: str
    chunks_created: int = 0
    embeddings_generated: int = 0
    core_persona_generated: bool = False
    total_tokens_used: int = 0
    success: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _join(values) -> str:
    return ", ".join(v for v in (values or []) if v)


def _quote(value: Optional[str]) -> Optional[str]:
    return f'"{value}"' if value else None


def build_bio_sections(character: Character) -> List[Tuple[str, List[str]]]:
    """
    (section title, lines) pairs for every non-empty section of the profile.
    A line is emitted only when its field has a value.
    """
    layout = [
        ("IDENTITY", [
            ("Name", character.name),
            ("Archetype", character.archetype),
            ("Role", character.chatbot_role),
            ("Age", character.conceptual_age),
            ("Source", character.source_material),
        ]),
        ("APPEARANCE", [
            ("Description", character.description),
            ("Features", character.features),
            ("Attire", character.attire),
            ("Color preferences", _join(character.colors)),
        ]),
        ("PERSONALITY", [
            ("Primary traits", _join(character.primary_traits)),
            ("Secondary traits", _join(character.secondary_traits)),
            ("Quirks", _join(character.quirks)),
        ]),
        ("COMMUNICATION", [
            ("Tone", _join(character.tone)),
            ("Vocabulary", character.vocabulary),
            ("Pacing", character.pacing),
            ("Inflection", character.inflection),
        ]),
        ("GOALS & MOTIVATION", [
            ("Primary motivation", character.primary_motivation),
            ("Core goal", character.core_goal),
            ("Secondary goals", _join(character.secondary_goals)),
        ]),
        ("INTERACTION STYLE", [
            ("Approach", character.approach),
            ("Patience", character.patience),
            ("Demeanor", character.demeanor),
            ("Adaptability", character.adaptability),
            ("Core abilities", _join(character.core_abilities)),
        ]),
        ("SIGNATURE PHRASES", [
            ("Greeting", _quote(character.greeting)),
            ("Affirmation", _quote(character.affirmation)),
            ("Comfort", _quote(character.comfort)),
        ]),
        ("BOUNDARIES", [
            ("Forbidden topics", _join(character.forbidden_topics)),
            ("Interaction policy", character.interaction_policy),
            ("Conflict resolution", character.conflict_resolution),
        ]),
    ]

    sections = []
    for title, fields in layout:
        lines = [f"{label}: {value}" for label, value in fields if value]
        if lines:
            sections.append((title, lines))
    return sections


def build_full_bio(character: Character, exclude: Tuple[str, ...] = ()) -> str:
    """Render the labeled biography. Sections named in exclude are skipped."""
    return "\n\n".join(
        f"{title}:\n" + "\n".join(lines)
        for title, lines in build_bio_sections(character)
        if title not in exclude
    )


def build_fallback_persona(character: Character) -> str:
    """Template persona assembled from trait lists, used when no LLM answer is available"""
    parts = []
    identity = " and ".join(v for v in (character.archetype, character.chatbot_role) if v)
    parts.append(f"{character.name} is a {identity}." if identity else f"{character.name} is a character.")

    traits = _join((character.primary_traits or [])[:3])
    tone = _join((character.tone or [])[:2])
    if traits and tone:
        parts.append(f"They are {traits}, speaking in a {tone} manner.")
    elif traits:
        parts.append(f"They are {traits}.")
    elif tone:
        parts.append(f"They speak in a {tone} manner.")

    if character.approach:
        parts.append(f"Their approach is to {character.approach.lower()}.")
    if character.vocabulary:
        parts.append(f"They use {character.vocabulary.lower()} language.")
    if character.primary_motivation:
        parts.append(f"They are driven by {character.primary_motivation.rstrip('.').lower()}.")
    return " ".join(parts)


def scrub_persona(text: str, max_words: int) -> str:
    """Drop appearance sentences and cap the word count"""
    sentences = re.split(r"(?<=[.!?])\s+", text.strip())
    kept = [s for s in sentences if s and not APPEARANCE_PATTERN.search(s)]
    words = " ".join(kept).split()
    if len(words) > max_words:
        words = words[:max_words]
    return " ".join(words)


class CharacterIngestionService:
    """Builds bio, persona and bio_chunk memories for characters"""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        llm: Optional[LLMClient] = None,
        config: Optional[IngestionConfig] = None,
    ):
        self.embedder = embedder
        self.llm = llm
        self.config = config or IngestionConfig.from_settings()

    async def generate_core_persona(self, character: Character) -> Tuple[str, int, Optional[str]]:
        """
        Returns (persona, tokens_used, error). The persona is always usable:
        the template fallback is used when the LLM is missing or fails.
        """
        max_words = self.config.core_persona_max_words
        if self.llm is None:
            logger.info(f"[INGEST] No LLM configured, using template persona for {character.name}")
            return build_fallback_persona(character), 0, None

        prompt = PERSONA_PROMPT.format(
            max_words=max_words,
            name=character.name,
            archetype=character.archetype or "Not specified",
            role=character.chatbot_role or "Not specified",
            traits=_join(character.primary_traits) or "Not specified",
            tone=_join(character.tone) or "Not specified",
            approach=character.approach or "Not specified",
            demeanor=character.demeanor or "Not specified",
            vocabulary=character.vocabulary or "Not specified",
            bio_excerpt=build_full_bio(character, exclude=("APPEARANCE",))[:2000],
        )

        try:
            result = await self.llm.generate(
                [{"role": "user", "content": prompt}],
                temperature=0.3,
                max_tokens=math.ceil(max_words * 1.3),
            )
            persona = scrub_persona(result.text, max_words)
            if not persona:
                raise ValueError("No core persona generated")
            return persona, result.tokens_used, None
        except Exception as e:
            logger.warning(f"[INGEST] Core persona generation failed for {character.name}, using template: {e}")
            return build_fallback_persona(character), 0, f"Core persona generation failed: {e}"

    async def ingest_character_bio(self, db: Session, character_id: str) -> IngestionResult:
        result = IngestionResult(character_id=character_id)

        character = db.query(Character).filter(Character.id == character_id).first()
        if not character:
            result.errors.append(f"Character not found: {character_id}")
            return result

        logger.info(f"[INGEST] Starting ingestion for {character.name} ({character_id})")

        full_bio = build_full_bio(character)
        character.full_bio = full_bio

        if self.config.generate_core_persona:
            persona, tokens, error = await self.generate_core_persona(character)
            character.core_persona_summary = persona
            result.core_persona_generated = True
            result.total_tokens_used += tokens
            if error:
                result.errors.append(error)

        try:
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"[INGEST] Failed to save bio for {character_id}: {e}")
            result.errors.append(f"Failed to save bio: {e}")
            return result

        if not full_bio.strip():
            result.errors.append("No biography content to ingest")
            return result

        try:
            chunks = chunk_text(full_bio, self.config.chunk_size, self.config.chunk_overlap)
        except ValueError as e:
            result.errors.append(f"Chunking failed: {e}")
            return result
        result.chunks_created = len(chunks)

        vectors = await self.embedder.embed_batch(chunks)
        result.total_tokens_used += sum(math.ceil(len(c) / 4) for c in chunks)

        try:
            MemoryStore.delete_by_type(db, character_id, MemoryType.BIO_CHUNK, commit=False)
            for index, (chunk, vector) in enumerate(zip(chunks, vectors)):
                if vector is None:
                    result.errors.append(f"Failed to generate embedding for chunk {index + 1}")
                    continue
                MemoryStore.add(
                    db,
                    character_id=character_id,
                    content=chunk,
                    memory_type=MemoryType.BIO_CHUNK,
                    embedding=vector,
                    emotional_weight=0.5,
                    importance=Importance.HIGH,
                    topics=["biography"],
                    commit=False,
                )
                result.embeddings_generated += 1
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"[INGEST] Failed to store chunks for {character_id}: {e}")
            result.errors.append(f"Failed to store memory chunks: {e}")
            result.embeddings_generated = 0
            return result

        result.success = result.chunks_created > 0 and result.embeddings_generated == result.chunks_created
        logger.info(
            f"[INGEST] {character.name}: {result.chunks_created} chunks, "
            f"{result.embeddings_generated} embedded, success={result.success}"
        )
        return result

    async def ingest_all_characters(self, db: Session) -> List[IngestionResult]:
        results = []
        for (character_id,) in db.query(Character.id).order_by(Character.created_at.asc()).all():
            results.append(await self.ingest_character_bio(db, character_id))
        succeeded = sum(1 for r in results if r.success)
        logger.info(f"[INGEST] Bulk ingestion finished: {succeeded}/{len(results)} succeeded")
        return results

    def get_ingestion_status(self, db: Session, character_id: str) -> Dict[str, Any]:
        character = db.query(Character).filter(Character.id == character_id).first()
        if not character:
            return {
                "has_full_bio": False,
                "has_core_persona": False,
                "memory_chunk_count": 0,
                "last_ingested": None,
            }

        last_chunk = (
            db.query(CharacterMemory)
            .filter(CharacterMemory.character_id == character_id, CharacterMemory.memory_type == MemoryType.BIO_CHUNK)
            .order_by(CharacterMemory.created_at.desc())
            .first()
        )
        return {
            "has_full_bio": bool(character.full_bio),
            "has_core_persona": bool(character.core_persona_summary),
            "memory_chunk_count": MemoryStore.count(db, character_id, MemoryType.BIO_CHUNK),
            "last_ingested": last_chunk.created_at.isoformat() if last_chunk else None,
        }

    async def health_check(self) -> Dict[str, Any]:
        embedding = await self.embedder.health_check()
        return {
            "status": embedding["status"],
            "embedding": embedding,
            "llm_configured": self.llm is not None,
            "config": asdict(self.config),
            "checked_at": datetime.utcnow().isoformat(),
        }
