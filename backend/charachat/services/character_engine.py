"""
Character Engine

Runs one chat turn end to end:

    load character -> session context -> placeholder substitution
    -> context (retrieval or recent history) -> record user turn
    -> classify -> template or dynamic prompt -> safety gate
    -> sanitize -> record assistant turn

Gate failures never reach the caller as exceptions; they turn into a fixed
apology that is stored in history like any other reply. The typing flag is
cleared on every exit path.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import GenerationError, MessageValidationError, NotFoundError
from ..models.character import Character
from ..models.memory import MemoryType, Importance
from .conversation_store import CharacterStateStore, ConversationStore, ConversationTurn
from .llm.content_cleaner import clean_chat_response, clean_response, strip_name_prefix
from .llm.prompts import (
    CharacterPersonality,
    ConversationContext,
    PromptComposer,
    PromptStrategy,
    analyze_prompt,
    resolve_strategy,
)
from .llm.safety import ChunkCallback, GenerationSafetyGate
from .llm.templates import (
    MessageType,
    SessionContext,
    detect_message_type,
    get_template_response,
    get_time_of_day,
    should_use_template,
)
from .rag_retrieval import RAGContext, RAGRetrievalService

logger = logging.getLogger(__name__)

APOLOGY_RESPONSE = "I apologize, but I had trouble generating a response. Please try again."


class CharacterEngineConfig(BaseModel):
    prompt_strategy: PromptStrategy = PromptStrategy.OPTIMIZED
    use_rag: bool = True
    token_budget: int = Field(default=300, ge=50)
    include_history: bool = True
    include_examples: bool = False
    generation_mode: str = Field(default="prompt", pattern="^(prompt|chat)$")
    rag_max_results: int = Field(default=2, ge=1)
    rag_min_similarity: float = Field(default=0.6, ge=-1.0, le=1.0)
    history_context_turns: int = Field(default=10, ge=0)
    remember_conversations: bool = False

    @classmethod
    def from_settings(cls, config=settings) -> "CharacterEngineConfig":
        return cls(
            prompt_strategy=config.engine_prompt_strategy,
            use_rag=config.engine_use_rag,
            token_budget=config.engine_token_budget,
            generation_mode=config.engine_generation_mode,
            history_context_turns=config.engine_history_context,
        )


@dataclass
class CharacterResponse:
    content: str
    character_id: str
    user_id: str
    message_type: MessageType
    used_template: bool
    prompt_strategy: str
    request_id: Optional[str] = None
    tokens_used: int = 0
    duration_ms: float = 0.0
    rag_degraded: bool = False
    memories_used: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "character_id": self.character_id,
            "user_id": self.user_id,
            "message_type": self.message_type.value,
            "used_template": self.used_template,
            "prompt_strategy": self.prompt_strategy,
            "request_id": self.request_id,
            "tokens_used": self.tokens_used,
            "duration_ms": round(self.duration_ms, 1),
            "rag_degraded": self.rag_degraded,
            "memories_used": self.memories_used,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _PreparedTurn:
    character: Character
    personality: CharacterPersonality
    session: SessionContext
    message: str
    message_type: MessageType
    used_template: bool
    strategy: str
    prompt_or_messages: Any
    rag_context: Optional[RAGContext]
    history: List[ConversationTurn]


class CharacterEngine:
    def __init__(
        self,
        rag: RAGRetrievalService,
        gate: GenerationSafetyGate,
        conversations: Optional[ConversationStore] = None,
        states: Optional[CharacterStateStore] = None,
        config: Optional[CharacterEngineConfig] = None,
    ):
        self.rag = rag
        self.gate = gate
        self.conversations = conversations or ConversationStore(max_turns=settings.engine_history_limit)
        self.states = states or CharacterStateStore()
        self.config = config or CharacterEngineConfig.from_settings()

    # --- Turn preparation ---

    def _load_character(self, db: Session, character_id: str) -> Character:
        character = db.query(Character).filter(Character.id == character_id).first()
        if not character:
            raise NotFoundError("Character", character_id)
        return character

    async def _build_context(
        self, db: Session, character_id: str, user_id: str, message: str
    ) -> ConversationContext:
        state = self.states.peek(character_id)
        history = self.conversations.get(character_id, user_id, limit=self.config.history_context_turns)
        context = ConversationContext(
            recent_messages=history if self.config.include_history else [],
            current_mood=state.mood if state else None,
            time_of_day=get_time_of_day(),
            session_duration=self.states.session_duration_minutes(character_id),
        )

        if self.config.use_rag:
            rag_context = await self.rag.get_character_context_for_llm(
                db,
                character_id,
                message,
                max_results=self.config.rag_max_results,
                min_similarity=self.config.rag_min_similarity,
            )
            if rag_context.degraded:
                logger.info(f"[ENGINE] Retrieval degraded for {character_id}, using recent history only")
            else:
                context.rag_context = rag_context
        return context

    async def _prepare_turn(
        self,
        db: Session,
        character_id: str,
        user_message: str,
        user_id: str,
        conversation_id: Optional[str],
    ) -> _PreparedTurn:
        if not user_message or not user_message.strip():
            raise MessageValidationError("Message cannot be empty")

        character = self._load_character(db, character_id)
        personality = CharacterPersonality.from_model(character)
        state = self.states.peek(character_id)
        session = SessionContext(
            character_name=character.name,
            character_id=character.id,
            location=state.location if state else None,
            time_of_day=get_time_of_day(),
            session_id=conversation_id,
        )
        message = session.apply(user_message.strip())

        context = await self._build_context(db, character_id, user_id, message)
        prior_history = list(context.recent_messages)

        await self.conversations.append(
            ConversationTurn(character_id=character_id, user_id=user_id, content=message, role="user")
        )
        await self._remember(db, character_id, message, conversation_id)

        message_type = detect_message_type(message)
        used_template = should_use_template(message)

        if self.config.generation_mode == "chat":
            strategy = "chat"
            prompt_or_messages = PromptComposer.compose_chat_messages(
                personality,
                message,
                self.conversations.get(character_id, user_id),
                rag_context=context.rag_context,
                max_history=self.config.history_context_turns,
                token_budget=self.config.token_budget,
                max_chars=self.gate.max_prompt_length,
            )
        elif used_template:
            strategy = "template"
            prompt_or_messages = PromptComposer.compose_prompt(
                personality,
                message,
                context,
                token_budget=self.config.token_budget,
                template_response=get_template_response(personality, message_type),
                max_chars=self.gate.max_prompt_length,
            )
        else:
            strategy = self.config.prompt_strategy
            if self.config.include_examples:
                strategy = PromptStrategy.EXAMPLES
            strategy = resolve_strategy(strategy, context.rag_context is not None)
            prompt_or_messages = PromptComposer.compose_prompt(
                personality,
                message,
                context,
                strategy=strategy,
                token_budget=self.config.token_budget,
                max_chars=self.gate.max_prompt_length,
            )
            strategy = strategy.value

        return _PreparedTurn(
            character=character,
            personality=personality,
            session=session,
            message=message,
            message_type=message_type,
            used_template=used_template,
            strategy=strategy,
            prompt_or_messages=prompt_or_messages,
            rag_context=context.rag_context,
            history=prior_history,
        )

    async def _remember(self, db: Session, character_id: str, message: str, conversation_id: Optional[str]) -> None:
        if not self.config.remember_conversations:
            return
        try:
            await self.rag.store_memory(
                db,
                character_id,
                message,
                MemoryType.CONVERSATION,
                emotional_weight=0.3,
                importance=Importance.LOW,
                session_id=conversation_id,
                time_of_day=get_time_of_day(),
            )
        except Exception as e:
            logger.warning(f"[ENGINE] Could not store conversation memory for {character_id}: {e}")

    def _sanitize(self, turn: _PreparedTurn, text: str) -> str:
        if self.config.generation_mode == "chat":
            recent = [t.content for t in turn.history if t.role == "assistant"]
            return turn.session.apply(clean_chat_response(text, turn.character.name, recent))
        return clean_response(text, turn.character.name, turn.session)

    async def _finish_turn(self, turn: _PreparedTurn, user_id: str, content: str) -> None:
        await self.conversations.append(
            ConversationTurn(character_id=turn.character.id, user_id=user_id, content=content, role="assistant")
        )

    def _response(self, turn: _PreparedTurn, user_id: str, content: str, **extra) -> CharacterResponse:
        return CharacterResponse(
            content=content,
            character_id=turn.character.id,
            user_id=user_id,
            message_type=turn.message_type,
            used_template=turn.used_template,
            prompt_strategy=turn.strategy,
            rag_degraded=self.config.use_rag and turn.rag_context is None,
            memories_used=len(turn.rag_context.relevant_memories) if turn.rag_context else 0,
            **extra,
        )

    # --- Public operations ---

    async def generate_character_response(
        self,
        db: Session,
        character_id: str,
        user_message: str,
        user_id: str,
        conversation_id: Optional[str] = None,
    ) -> CharacterResponse:
        turn = await self._prepare_turn(db, character_id, user_message, user_id, conversation_id)

        self.states.update(character_id, is_typing=True)
        try:
            try:
                result = await self.gate.safe_generate(turn.prompt_or_messages)
            except GenerationError as e:
                logger.error(f"[ENGINE] Generation failed for {turn.character.name}: {e}")
                await self._finish_turn(turn, user_id, APOLOGY_RESPONSE)
                return self._response(turn, user_id, APOLOGY_RESPONSE, request_id=e.request_id, error=str(e))

            content = self._sanitize(turn, result.text)
            await self._finish_turn(turn, user_id, content)
            logger.info(f"[ENGINE] Response generated for {turn.character.name}: {content[:100]}")
            return self._response(
                turn,
                user_id,
                content,
                request_id=result.request_id,
                tokens_used=result.tokens_used,
                duration_ms=result.duration_ms,
            )
        finally:
            self.states.update(character_id, is_typing=False, last_active=datetime.utcnow())

    async def generate_streaming_character_response(
        self,
        db: Session,
        character_id: str,
        user_message: str,
        user_id: str,
        on_chunk: ChunkCallback,
        conversation_id: Optional[str] = None,
    ) -> CharacterResponse:
        """
        Same pipeline as generate_character_response. The first chunk has any
        speaker label stripped before it is forwarded; the stored reply is the
        fully sanitized text.
        """
        turn = await self._prepare_turn(db, character_id, user_message, user_id, conversation_id)
        first = True

        async def forward(chunk: str):
            nonlocal first
            if first:
                chunk = strip_name_prefix(chunk, turn.character.name)
                first = False
            if chunk:
                outcome = on_chunk(chunk)
                if inspect.isawaitable(outcome):
                    await outcome

        self.states.update(character_id, is_typing=True)
        try:
            try:
                result = await self.gate.safe_generate_stream(turn.prompt_or_messages, on_chunk=forward)
            except GenerationError as e:
                logger.error(f"[ENGINE] Streaming generation failed for {turn.character.name}: {e}")
                await self._finish_turn(turn, user_id, APOLOGY_RESPONSE)
                return self._response(turn, user_id, APOLOGY_RESPONSE, request_id=e.request_id, error=str(e))

            content = self._sanitize(turn, result.text)
            await self._finish_turn(turn, user_id, content)
            return self._response(
                turn, user_id, content, request_id=result.request_id, duration_ms=result.duration_ms
            )
        finally:
            self.states.update(character_id, is_typing=False, last_active=datetime.utcnow())

    def get_conversation_history(self, character_id: str, user_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        return self.conversations.get(character_id, user_id, limit=limit)

    async def clear_conversation_history(self, character_id: str, user_id: str) -> int:
        removed = await self.conversations.clear(character_id, user_id)
        logger.info(f"[ENGINE] Cleared {removed} turns for {character_id}/{user_id}")
        return removed

    async def clear_conversation_history_for_character(self, character_id: str) -> int:
        removed = await self.conversations.clear_for_character(character_id)
        logger.info(f"[ENGINE] Cleared {removed} turns for all users of {character_id}")
        return removed

    def get_character_state(self, character_id: str):
        return self.states.get(character_id)

    def set_character_typing(self, character_id: str, is_typing: bool):
        return self.states.update(character_id, is_typing=is_typing)

    def update_config(self, **changes) -> CharacterEngineConfig:
        unknown = set(changes) - set(CharacterEngineConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown engine options: {', '.join(sorted(unknown))}")
        self.config = CharacterEngineConfig(**{**self.config.model_dump(), **changes})
        logger.info(f"[ENGINE] Config updated: {changes}")
        return self.config

    def get_config(self) -> Dict[str, Any]:
        return self.config.model_dump(mode="json")

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "active_characters": self.conversations.active_characters(),
            "total_messages": self.conversations.total_turns(),
            "active_generations": self.gate.active_count,
            "config": self.get_config(),
        }

    async def test_prompt_strategies(
        self, db: Session, character_id: str, user_message: str, user_id: str
    ) -> Dict[str, Dict[str, Any]]:
        """Every strategy's prompt and analysis for one message; nothing is generated"""
        character = self._load_character(db, character_id)
        personality = CharacterPersonality.from_model(character)
        context = await self._build_context(db, character_id, user_id, user_message)
        results = PromptComposer.compare_all_strategies(personality, user_message, context)
        if should_use_template(user_message):
            prompt = PromptComposer.build_template_prompt(
                personality,
                user_message,
                context,
                get_template_response(personality, detect_message_type(user_message)),
            )
            results["template"] = {"prompt": prompt, "analysis": analyze_prompt(prompt)}
        return results
