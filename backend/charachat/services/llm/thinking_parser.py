"""
Reasoning block removal

Some models emit their reasoning inline before the in-character reply.
Those blocks never belong in a chat message.
"""

import re
import logging

logger = logging.getLogger(__name__)


class ThinkingTagParser:
    """Strips <think>-style reasoning blocks from model output"""

    # (name, opening, closing)
    THINKING_PATTERNS = [
        ("think", r"<think>", r"</think>"),
        ("thinking", r"<thinking>", r"</thinking>"),
        ("reasoning", r"<reasoning>", r"</reasoning>"),
        ("reflection", r"<reflection>", r"</reflection>"),
        ("bracket thinking", r"\[THINKING\]", r"\[/THINKING\]"),
        ("bracket reasoning", r"\[REASONING\]", r"\[/REASONING\]"),
        ("token reasoning", r"<\|reasoning_start\|>", r"<\|reasoning_end\|>"),
        ("token thinking", r"<\|thinking_start\|>", r"<\|thinking_end\|>"),
    ]

    # A closing tag with no opener means the opener was cut off upstream
    ORPHAN_CLOSE = re.compile(r"^.*?(?:</think>|</thinking>|</reasoning>)", re.DOTALL | re.IGNORECASE)

    @classmethod
    def strip_thinking_tags(cls, text: str, preserve_whitespace: bool = False) -> str:
        if not text or not isinstance(text, str):
            return text

        cleaned = text
        removed = 0
        for name, opening, closing in cls.THINKING_PATTERNS:
            cleaned, count = re.subn(f"{opening}.*?{closing}", "", cleaned, flags=re.DOTALL | re.IGNORECASE)
            removed += count

            # Unterminated block: drop from the opener to the end
            cleaned, count = re.subn(f"{opening}.*$", "", cleaned, flags=re.DOTALL | re.IGNORECASE)
            removed += count

        cleaned, count = cls.ORPHAN_CLOSE.subn("", cleaned)
        removed += count

        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        if not preserve_whitespace:
            cleaned = cleaned.strip()

        if removed:
            logger.debug(f"[CLEAN] Stripped {removed} reasoning block(s)")
        return cleaned

    @classmethod
    def has_thinking_tags(cls, text: str) -> bool:
        if not text:
            return False
        return any(
            re.search(opening, text, re.IGNORECASE)
            for _, opening, _ in cls.THINKING_PATTERNS
        )
