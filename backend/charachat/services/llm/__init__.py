"""
Text generation package

LiteLLM client, prompt composition, response cleanup and the safety gate
that bounds every call to the model backend.
"""

from .client import LLMClient, LLMResult
from .content_cleaner import clean_chat_response, clean_response, strip_name_prefix
from .prompts import CharacterPersonality, ConversationContext, PromptComposer, PromptStrategy, analyze_prompt
from .safety import GenerationResult, GenerationSafetyGate
from .templates import MessageType, SessionContext, detect_message_type, process_message_templates
from .thinking_parser import ThinkingTagParser

__all__ = [
    "LLMClient",
    "LLMResult",
    "clean_chat_response",
    "clean_response",
    "strip_name_prefix",
    "CharacterPersonality",
    "ConversationContext",
    "PromptComposer",
    "PromptStrategy",
    "analyze_prompt",
    "GenerationResult",
    "GenerationSafetyGate",
    "MessageType",
    "SessionContext",
    "detect_message_type",
    "process_message_templates",
    "ThinkingTagParser",
]
