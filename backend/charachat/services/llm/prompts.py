"""
Prompt Composer

Builds the single prompt string (or chat message list) handed to the text
generation model. Strategies trade size for detail:

- minimal: one line of identity, for small or slow models
- detailed: full profile plus the last few turns and boundaries
- structured: bullet-point profile
- conversational: identity plus a longer slice of history, mood and time
- examples: few-shot replies built from the character's own phrases
- optimized: compact description plus the last few turns (default)
- rag-enhanced: core persona plus retrieved memories; used automatically
  whenever retrieval context is present

Every strategy ends with the same footer so the model answers in character
without a speaker label.
"""

import math
import logging
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..conversation_store import ConversationTurn

logger = logging.getLogger(__name__)


class PromptStrategy(str, Enum):
    MINIMAL = "minimal"
    DETAILED = "detailed"
    STRUCTURED = "structured"
    CONVERSATIONAL = "conversational"
    EXAMPLES = "examples"
    OPTIMIZED = "optimized"
    RAG_ENHANCED = "rag-enhanced"


DYNAMIC_STRATEGIES = [
    PromptStrategy.MINIMAL,
    PromptStrategy.DETAILED,
    PromptStrategy.STRUCTURED,
    PromptStrategy.EXAMPLES,
    PromptStrategy.CONVERSATIONAL,
    PromptStrategy.OPTIMIZED,
]


def resolve_strategy(strategy, has_retrieval: bool) -> PromptStrategy:
    """Retrieval context always wins; rag-enhanced without it falls back to optimized"""
    if has_retrieval:
        return PromptStrategy.RAG_ENHANCED
    strategy = PromptStrategy(strategy)
    if strategy == PromptStrategy.RAG_ENHANCED:
        return PromptStrategy.OPTIMIZED
    return strategy


# Turns in history that carry these were contaminated by an earlier prompt leak
LEAKED_INSTRUCTION_MARKERS = [
    "Remember what has happened",
    "Respond ONLY as",
    "CRITICAL:",
    "<|system|>",
    "<|user|>",
    "<|model|>",
    "(do not include your name in the response)",
]


@dataclass
class CharacterPersonality:
    """Plain view of the profile fields the composer reads"""
    name: str
    archetype: str = ""
    chatbot_role: str = ""
    description: Optional[str] = None
    attire: Optional[str] = None
    colors: List[str] = field(default_factory=list)
    features: Optional[str] = None
    primary_traits: List[str] = field(default_factory=list)
    secondary_traits: List[str] = field(default_factory=list)
    quirks: List[str] = field(default_factory=list)
    tone: List[str] = field(default_factory=list)
    vocabulary: Optional[str] = None
    approach: Optional[str] = None
    demeanor: Optional[str] = None
    primary_motivation: Optional[str] = None
    greeting: Optional[str] = None
    affirmation: Optional[str] = None
    comfort: Optional[str] = None
    forbidden_topics: List[str] = field(default_factory=list)
    interaction_policy: Optional[str] = None

    @classmethod
    def from_model(cls, character) -> "CharacterPersonality":
        return cls(
            name=character.name,
            archetype=character.archetype or "",
            chatbot_role=character.chatbot_role or "",
            description=character.description,
            attire=character.attire,
            colors=list(character.colors or []),
            features=character.features,
            primary_traits=list(character.primary_traits or []),
            secondary_traits=list(character.secondary_traits or []),
            quirks=list(character.quirks or []),
            tone=list(character.tone or []),
            vocabulary=character.vocabulary,
            approach=character.approach,
            demeanor=character.demeanor,
            primary_motivation=character.primary_motivation,
            greeting=character.greeting,
            affirmation=character.affirmation,
            comfort=character.comfort,
            forbidden_topics=list(character.forbidden_topics or []),
            interaction_policy=character.interaction_policy,
        )


@dataclass
class ConversationContext:
    recent_messages: List[ConversationTurn] = field(default_factory=list)
    current_mood: Optional[str] = None
    time_of_day: Optional[str] = None
    session_duration: Optional[float] = None
    rag_context: Optional[Any] = None  # RAGContext


def _footer(character: CharacterPersonality, user_message: str) -> str:
    return (
        f"User: {user_message}\n\n"
        f"Respond as {character.name} (do not include your name in the response):"
    )


def _history_lines(turns: List[ConversationTurn], assistant_label: str) -> str:
    return "\n".join(
        f"{'User' if turn.role == 'user' else assistant_label}: {turn.content}"
        for turn in turns
    )


def _appearance_lines(character: CharacterPersonality) -> List[str]:
    lines = []
    if character.description:
        lines.append(f"Your appearance: {character.description}")
    if character.features:
        lines.append(f"Your features: {character.features}")
    if character.attire:
        lines.append(f"You wear: {character.attire}")
    return lines


def _over_budget(prompt_or_messages, token_budget: Optional[int], max_chars: Optional[int]) -> bool:
    if isinstance(prompt_or_messages, str):
        text, length = prompt_or_messages, len(prompt_or_messages)
    else:
        contents = [m.get("content") or "" for m in prompt_or_messages]
        text, length = "\n".join(contents), sum(len(c) for c in contents)
    if max_chars and length > max_chars:
        return True
    return bool(token_budget) and analyze_prompt(text)["token_estimate"] > token_budget


class PromptComposer:
    """Strategy builders. All are pure functions of their inputs."""

    @staticmethod
    def build_minimal_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        trait = character.primary_traits[0] if character.primary_traits else "helpful"
        tone = character.tone[0] if character.tone else "friendly"
        archetype = character.archetype or "companion"
        return f"You are {character.name}, a {archetype}. Be {trait} and {tone}.\n\n{_footer(character, user_message)}"

    @staticmethod
    def build_detailed_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        sections = [f"You are {character.name}, {character.description or character.archetype or 'a companion'}."]
        if character.chatbot_role:
            sections.append(f"Your role: {character.chatbot_role}")
        if character.primary_traits:
            sections.append(f"Primary traits: {', '.join(character.primary_traits)}")
        if character.secondary_traits:
            sections.append(f"Secondary traits: {', '.join(character.secondary_traits)}")
        if character.quirks:
            sections.append(f"Quirks: {', '.join(character.quirks)}")
        if character.tone:
            sections.append(f"Speaking tone: {', '.join(character.tone)}")
        if character.vocabulary:
            sections.append(f"Vocabulary: {character.vocabulary}")
        if character.approach:
            sections.append(f"Approach: {character.approach}")
        if context.recent_messages:
            sections.append("Recent conversation:\n" + _history_lines(context.recent_messages[-4:], character.name))
        if character.forbidden_topics:
            sections.append(f"Avoid discussing: {', '.join(character.forbidden_topics)}")
        sections.append(f"Stay in character. Respond naturally as {character.name}.")
        return "\n\n".join(sections) + "\n\n" + _footer(character, user_message)

    @staticmethod
    def build_structured_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        lines = [
            f"CHARACTER: {character.name}",
            f"ARCHETYPE: {character.archetype or 'companion'}",
            f"ROLE: {character.chatbot_role or 'conversation partner'}",
            "",
            "PERSONALITY:",
            f"• Primary: {', '.join(character.primary_traits[:3]) or 'warm'}",
            f"• Tone: {', '.join(character.tone[:2]) or 'friendly'}",
            f"• Style: {character.vocabulary or 'conversational'}",
            "",
            "BEHAVIOR:",
            f"• Approach: {character.approach or 'warm and engaging'}",
            f"• Demeanor: {character.demeanor or 'friendly'}",
        ]
        if character.quirks:
            lines.append(f"• Quirks: {', '.join(character.quirks[:2])}")
        if context.recent_messages:
            lines += ["", f"CONTEXT: {context.recent_messages[-1].content[:100]}..."]
        lines += ["", f"INSTRUCTIONS: Respond as {character.name}. Stay in character."]
        return "\n".join(lines) + "\n\n" + _footer(character, user_message)

    @staticmethod
    def build_conversational_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        lines = [f"You are {character.name}, a {character.archetype or 'companion'}."]
        if character.primary_traits:
            lines.append(f"You are {' and '.join(character.primary_traits[:2])}.")
        if character.tone:
            lines.append(f"You speak in a {character.tone[0]} manner.")
        if character.approach:
            lines.append(f"Your conversational approach: {character.approach}")
        if context.current_mood:
            lines.append(f"Current mood: {context.current_mood}")
        if context.time_of_day:
            lines.append(f"Time: {context.time_of_day}")
        if context.session_duration and context.session_duration >= 1:
            lines.append(f"You have been talking for {context.session_duration:.0f} minutes.")
        if context.recent_messages:
            lines.append("\nConversation so far:\n" + _history_lines(context.recent_messages[-6:], character.name))
        lines.append("\nContinue the conversation naturally.")
        return "\n".join(lines) + "\n\n" + _footer(character, user_message)

    @staticmethod
    def build_character_description(character: CharacterPersonality) -> str:
        traits = (character.primary_traits + character.secondary_traits)[:5]
        tone_words = character.tone[:3]

        desc = f"You are {character.name}."
        if character.description:
            desc += f" {character.description}"
        elif character.archetype:
            desc += f" You are a {character.archetype.lower()}."
        if character.chatbot_role:
            desc += f" Your role: {character.chatbot_role}."
        if traits:
            desc += f" You are {', '.join(traits)}."
        if tone_words:
            desc += f" You speak in a {', '.join(tone_words)} manner."
        if character.greeting:
            desc += f' You often greet people with phrases like "{character.greeting}".'
        if character.quirks:
            desc += f" You tend to {character.quirks[0].lower()}."
        desc += f" Always respond as {character.name} would."
        return desc

    @staticmethod
    def build_optimized_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        parts = [PromptComposer.build_character_description(character)]
        if context.recent_messages:
            parts.append(_history_lines(context.recent_messages[-4:], "You"))
        parts.append(_footer(character, user_message))
        return "\n\n".join(parts)

    @staticmethod
    def build_character_examples(character: CharacterPersonality) -> str:
        examples = []
        if character.greeting:
            examples.append(f"User: Hello {character.name}!\n{character.name}: {character.greeting}")
        if character.primary_traits:
            trait = character.primary_traits[0].lower()
            if "wise" in trait:
                examples.append(
                    f"User: I'm feeling confused about something.\n"
                    f"{character.name}: Take a moment to breathe, dear one. Clarity often comes when we step back and observe."
                )
            elif "caring" in trait:
                examples.append(
                    f"User: I had a rough day.\n"
                    f"{character.name}: I'm sorry to hear that. Would you like to talk about what happened?"
                )
            elif "mysterious" in trait:
                examples.append(
                    f"User: What are you thinking about?\n"
                    f"{character.name}: The shadows hold many secrets... but some are meant to be discovered slowly."
                )
        if character.comfort and len(examples) < 2:
            examples.append(f"User: I'm worried about tomorrow.\n{character.name}: {character.comfort}")
        return "\n\n".join(examples)

    @staticmethod
    def build_examples_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        parts = [PromptComposer.build_character_description(character)]
        examples = PromptComposer.build_character_examples(character)
        if examples:
            parts.append(f"Examples of how {character.name} responds:\n{examples}")
        if context.recent_messages:
            parts.append(_history_lines(context.recent_messages[-4:], "You"))
        parts.append(_footer(character, user_message))
        return "\n\n".join(parts)

    @staticmethod
    def _rag_body(character: CharacterPersonality, context: ConversationContext) -> str:
        rag = context.rag_context
        body = f"--- CORE PERSONA ---\n{rag.core_persona}\n\n"

        if rag.relevant_memories:
            body += "--- RELEVANT MEMORIES ---\n"
            for memory in rag.relevant_memories:
                memory_type = getattr(memory.memory_type, "value", memory.memory_type)
                label = "BACKGROUND" if memory_type == "bio_chunk" else str(memory_type).upper()
                body += f"{label}: {memory.content}\n"
            body += "\n"

        if context.time_of_day or context.current_mood:
            body += "--- CURRENT CONTEXT ---\n"
            if context.time_of_day:
                body += f"Time: {context.time_of_day}\n"
            if context.current_mood:
                body += f"Mood: {context.current_mood}\n"
            body += "\n"
        return body

    @staticmethod
    def build_rag_enhanced_prompt(character: CharacterPersonality, user_message: str, context: ConversationContext) -> str:
        body = PromptComposer._rag_body(character, context)
        if context.recent_messages:
            body += "--- RECENT CONVERSATION ---\n" + _history_lines(context.recent_messages[-4:], "You") + "\n\n"
        body += (
            f"INSTRUCTIONS: You are {character.name}. Use the above context to inform your response naturally. "
            f"Stay in character and respond as {character.name} would.\n\n"
        )
        return body + _footer(character, user_message)

    @staticmethod
    def build_template_prompt(
        character: CharacterPersonality,
        user_message: str,
        context: ConversationContext,
        template_response: str,
    ) -> str:
        """
        Minimal (or rag-enhanced) body, appearance data, and the templated
        reply as a style anchor.
        """
        if context.rag_context is not None:
            body = PromptComposer._rag_body(character, context).rstrip("\n")
        else:
            trait = character.primary_traits[0] if character.primary_traits else "helpful"
            tone = character.tone[0] if character.tone else "friendly"
            body = f"You are {character.name}, a {character.archetype or 'companion'}. Be {trait} and {tone}."

        lines = [body]
        lines.extend(_appearance_lines(character))
        lines.append(f'Reply in the spirit of: "{template_response}"')
        return "\n".join(lines) + "\n\n" + _footer(character, user_message)

    @staticmethod
    def build_prompt(
        character: CharacterPersonality,
        user_message: str,
        context: Optional[ConversationContext] = None,
        strategy: PromptStrategy = PromptStrategy.OPTIMIZED,
    ) -> str:
        context = context or ConversationContext()
        strategy = resolve_strategy(strategy, context.rag_context is not None)
        builder = STRATEGY_BUILDERS[strategy]
        return builder(character, user_message, context)

    @staticmethod
    def compose_prompt(
        character: CharacterPersonality,
        user_message: str,
        context: Optional[ConversationContext] = None,
        strategy: PromptStrategy = PromptStrategy.OPTIMIZED,
        token_budget: Optional[int] = None,
        template_response: Optional[str] = None,
        max_chars: Optional[int] = None,
    ) -> str:
        """
        Build a prompt and shrink it toward token_budget and max_chars: oldest
        history turns go first, then the lowest-ranked memories. Returns the
        smallest prompt reached if the limits cannot be met.
        """
        context = context or ConversationContext()

        def build(ctx: ConversationContext) -> str:
            if template_response is not None:
                return PromptComposer.build_template_prompt(character, user_message, ctx, template_response)
            return PromptComposer.build_prompt(character, user_message, ctx, strategy)

        prompt = build(context)
        while _over_budget(prompt, token_budget, max_chars):
            if context.recent_messages:
                context = dataclasses.replace(context, recent_messages=context.recent_messages[1:])
            elif context.rag_context is not None and context.rag_context.relevant_memories:
                rag = dataclasses.replace(
                    context.rag_context,
                    relevant_memories=context.rag_context.relevant_memories[:-1],
                )
                context = dataclasses.replace(context, rag_context=rag)
            else:
                logger.debug(f"Prompt still over budget ({token_budget} tokens, {max_chars} chars) with nothing left to drop")
                break
            prompt = build(context)
        return prompt

    @staticmethod
    def build_chat_messages(
        character: CharacterPersonality,
        user_message: str,
        history: List[ConversationTurn],
        rag_context: Optional[Any] = None,
        max_history: int = 10,
    ) -> List[Dict[str, str]]:
        """
        System message, then up to max_history prior turns with strictly
        alternating roles, then the current user message.
        """
        traits = ", ".join(character.primary_traits) or "warm"
        tone = ", ".join(character.tone) or "natural"
        system = [
            f"You are roleplaying as {character.name}. Stay in character at all times.",
            "",
            "## Character Profile",
            f"- Name: {character.name}",
            f"- Personality: {traits}",
            f"- Speaking Style: {tone}",
            f"- Approach: {character.approach or 'engaging and attentive'}",
            f"- Motivation: {character.primary_motivation or 'building a meaningful connection'}",
        ]
        if rag_context is not None:
            system += ["", "## Core Persona", rag_context.core_persona]
            if rag_context.relevant_memories:
                system += ["", "## Things You Remember"]
                system += [f"- {m.content}" for m in rag_context.relevant_memories]
        if character.forbidden_topics:
            system += ["", f"Avoid discussing: {', '.join(character.forbidden_topics)}"]
        system += [
            "",
            "## Formatting",
            "- *Actions and physical descriptions* go in asterisks: *steps closer with a warm smile*",
            "- *Internal thoughts* also go in asterisks",
            "- Spoken dialogue has NO quotation marks",
            "- Never wrap a single word in asterisks",
            "- Never repeat what was already said; build on earlier turns",
            "",
            f"Remember: you ARE {character.name}. Reply with {character.name}'s next message only.",
        ]

        messages = [{"role": "system", "content": "\n".join(system)}]
        current = user_message.strip()
        for turn in (history[-max_history:] if max_history > 0 else []):
            content = turn.content.strip()
            if not content or content == current:
                continue
            if any(marker in content for marker in LEAKED_INSTRUCTION_MARKERS):
                continue
            role = "user" if turn.role == "user" else "assistant"
            if messages[-1]["role"] == role:
                messages[-1]["content"] += "\n" + content
            else:
                messages.append({"role": role, "content": content})

        if messages[-1]["role"] == "user":
            messages[-1]["content"] += "\n" + user_message
        else:
            messages.append({"role": "user", "content": user_message})
        return messages

    @staticmethod
    def compose_chat_messages(
        character: CharacterPersonality,
        user_message: str,
        history: List[ConversationTurn],
        rag_context: Optional[Any] = None,
        max_history: int = 10,
        token_budget: Optional[int] = None,
        max_chars: Optional[int] = None,
    ) -> List[Dict[str, str]]:
        """
        build_chat_messages shrunk toward token_budget and max_chars by
        dropping the oldest history turns. The system message and the current
        user message are always kept.
        """
        turns = list(history[-max_history:]) if max_history > 0 else []

        def build(kept: List[ConversationTurn]) -> List[Dict[str, str]]:
            return PromptComposer.build_chat_messages(
                character, user_message, kept, rag_context=rag_context, max_history=len(kept)
            )

        messages = build(turns)
        while turns and _over_budget(messages, token_budget, max_chars):
            turns = turns[1:]
            messages = build(turns)
        if _over_budget(messages, token_budget, max_chars):
            logger.debug(f"Chat messages still over budget ({token_budget} tokens, {max_chars} chars) with no history left")
        return messages

    @staticmethod
    def compare_all_strategies(
        character: CharacterPersonality,
        user_message: str,
        context: Optional[ConversationContext] = None,
    ) -> Dict[str, Dict[str, Any]]:
        context = context or ConversationContext()
        plain = dataclasses.replace(context, rag_context=None)
        results = {}
        for strategy in DYNAMIC_STRATEGIES:
            prompt = STRATEGY_BUILDERS[strategy](character, user_message, plain)
            results[strategy.value] = {"prompt": prompt, "analysis": analyze_prompt(prompt)}
        if context.rag_context is not None:
            prompt = PromptComposer.build_rag_enhanced_prompt(character, user_message, context)
            results[PromptStrategy.RAG_ENHANCED.value] = {"prompt": prompt, "analysis": analyze_prompt(prompt)}
        return results


STRATEGY_BUILDERS: Dict[PromptStrategy, Callable[[CharacterPersonality, str, ConversationContext], str]] = {
    PromptStrategy.MINIMAL: PromptComposer.build_minimal_prompt,
    PromptStrategy.DETAILED: PromptComposer.build_detailed_prompt,
    PromptStrategy.STRUCTURED: PromptComposer.build_structured_prompt,
    PromptStrategy.CONVERSATIONAL: PromptComposer.build_conversational_prompt,
    PromptStrategy.EXAMPLES: PromptComposer.build_examples_prompt,
    PromptStrategy.OPTIMIZED: PromptComposer.build_optimized_prompt,
    PromptStrategy.RAG_ENHANCED: PromptComposer.build_rag_enhanced_prompt,
}


def analyze_prompt(prompt: str) -> Dict[str, Any]:
    """
    Rough size and shape of a prompt. The strategy guess comes from marker
    strings and is only meant for comparison tooling.
    """
    word_count = len(prompt.split())
    token_estimate = math.ceil(word_count * 1.3)
    line_count = len(prompt.split("\n"))

    if token_estimate < 200:
        complexity = "low"
    elif token_estimate < 400:
        complexity = "medium"
    else:
        complexity = "high"

    if "--- CORE PERSONA ---" in prompt:
        strategy = PromptStrategy.RAG_ENHANCED.value
    elif prompt.startswith("CHARACTER:"):
        strategy = PromptStrategy.STRUCTURED.value
    elif "Reply in the spirit of:" in prompt:
        strategy = "template"
    elif "Examples of how" in prompt:
        strategy = PromptStrategy.EXAMPLES.value
    elif "Conversation so far:" in prompt or "Continue the conversation naturally." in prompt:
        strategy = PromptStrategy.CONVERSATIONAL.value
    elif "Stay in character. Respond naturally as" in prompt:
        strategy = PromptStrategy.DETAILED.value
    elif "Always respond as" in prompt:
        strategy = PromptStrategy.OPTIMIZED.value
    elif token_estimate < 100:
        strategy = PromptStrategy.MINIMAL.value
    else:
        strategy = "unknown"

    return {
        "token_estimate": token_estimate,
        "word_count": word_count,
        "line_count": line_count,
        "complexity": complexity,
        "strategy": strategy,
    }


# Module-level shortcuts
build_prompt = PromptComposer.build_prompt
compose_prompt = PromptComposer.compose_prompt
build_template_prompt = PromptComposer.build_template_prompt
build_chat_messages = PromptComposer.build_chat_messages
compare_all_strategies = PromptComposer.compare_all_strategies
