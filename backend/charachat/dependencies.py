"""
Process-wide service instances

Services are created on first use and shared by every request. Tests replace
them through app.dependency_overrides or reset_services().
"""

import logging
from typing import Optional

from .config import settings
from .services.character_engine import CharacterEngine, CharacterEngineConfig
from .services.character_ingestion import CharacterIngestionService
from .services.conversation_store import CharacterStateStore, ConversationStore
from .services.embedding import EmbeddingProvider, create_embedding_provider
from .services.llm.client import LLMClient
from .services.llm.safety import GenerationSafetyGate
from .services.rag_retrieval import RAGRetrievalService

logger = logging.getLogger(__name__)

_embedder: Optional[EmbeddingProvider] = None
_llm_client: Optional[LLMClient] = None
_safety_gate: Optional[GenerationSafetyGate] = None
_rag_service: Optional[RAGRetrievalService] = None
_ingestion_service: Optional[CharacterIngestionService] = None
_character_engine: Optional[CharacterEngine] = None


def get_embedder() -> EmbeddingProvider:
    global _embedder
    if _embedder is None:
        _embedder = create_embedding_provider(settings)
    return _embedder


def get_llm_client() -> LLMClient:
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient.from_settings(settings)
    return _llm_client


def get_safety_gate() -> GenerationSafetyGate:
    global _safety_gate
    if _safety_gate is None:
        _safety_gate = GenerationSafetyGate.from_settings(get_llm_client(), settings)
    return _safety_gate


def get_rag_service() -> RAGRetrievalService:
    global _rag_service
    if _rag_service is None:
        _rag_service = RAGRetrievalService(get_embedder())
    return _rag_service


def get_ingestion_service() -> CharacterIngestionService:
    global _ingestion_service
    if _ingestion_service is None:
        llm = get_llm_client() if settings.generate_core_persona else None
        _ingestion_service = CharacterIngestionService(get_embedder(), llm=llm)
    return _ingestion_service


def get_character_engine() -> CharacterEngine:
    global _character_engine
    if _character_engine is None:
        _character_engine = CharacterEngine(
            rag=get_rag_service(),
            gate=get_safety_gate(),
            conversations=ConversationStore(max_turns=settings.engine_history_limit),
            states=CharacterStateStore(),
            config=CharacterEngineConfig.from_settings(settings),
        )
        logger.info("[ENGINE] Character engine initialized")
    return _character_engine


def reset_services() -> None:
    """Drop all shared instances; the next getter call rebuilds them"""
    global _embedder, _llm_client, _safety_gate, _rag_service, _ingestion_service, _character_engine
    _embedder = None
    _llm_client = None
    _safety_gate = None
    _rag_service = None
    _ingestion_service = None
    _character_engine = None
