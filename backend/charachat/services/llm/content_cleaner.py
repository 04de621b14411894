"""
Content Cleaner Module

Cleans raw model output into a reply that reads as the character speaking:
no speaker labels, no meta commentary, no leaked control tokens.
"""

import re
import logging
from typing import List, Optional

from .thinking_parser import ThinkingTagParser
from .templates import SessionContext

logger = logging.getLogger(__name__)

EMPTY_FALLBACK = "I'm here with you."
LISTENING_FALLBACK = "I'm listening."

_BARE_PARENTHETICAL = re.compile(r"^\([^)]*\)$")
_LEADING_PARENTHETICAL = re.compile(r"^\([^)]*\)\s*")
# "Test Character:", "Aria Character:"; at most two words before the label
_GENERIC_CHARACTER_LABEL = re.compile(r"^\w+(?:\s+\w+)?\s*Character:\s*", re.IGNORECASE)

_CONTROL_TOKENS = [
    re.compile(r"<\|[^|>]{1,40}\|>"),
    re.compile(r"\[/?inst\]", re.IGNORECASE),
    re.compile(r"<<?/?SYS>>?", re.IGNORECASE),
    re.compile(r"</?s>"),
]

_ROLE_LINE = re.compile(r"^(?:Assistant|AI|Model):\s*", re.IGNORECASE | re.MULTILINE)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def _name_prefix_patterns(character_name: str) -> List[re.Pattern]:
    name = re.escape(character_name.strip())
    return [
        re.compile(rf"^{name}:\s*", re.IGNORECASE),
        re.compile(rf"^{name}\s*-\s*", re.IGNORECASE),
        re.compile(rf"^{name}\s*says:\s*", re.IGNORECASE),
        re.compile(rf"^{name}\s*replies:\s*", re.IGNORECASE),
        re.compile(rf"^{name}\s*responds:\s*", re.IGNORECASE),
        re.compile(rf'^"{name}:\s*', re.IGNORECASE),
        _GENERIC_CHARACTER_LABEL,
    ]


def strip_name_prefix(text: str, character_name: str) -> str:
    """Remove the first matching speaker label from the start of text"""
    if not text or not character_name:
        return text
    leading = text[:len(text) - len(text.lstrip())]
    body = text.lstrip()
    for pattern in _name_prefix_patterns(character_name):
        if pattern.match(body):
            return leading + pattern.sub("", body, count=1).lstrip()
    return text


def clean_response(raw_text: str, character_name: str, session_context: Optional[SessionContext] = None) -> str:
    """
    Sanitize a prompt-mode completion.

    Order: empty/meta fallback, speaker label, leading parenthetical,
    stray opening quote, placeholder substitution, final fallback.
    """
    raw = (raw_text or "").strip()
    if not raw or _BARE_PARENTHETICAL.match(raw):
        return EMPTY_FALLBACK

    cleaned = strip_name_prefix(raw, character_name).strip()
    cleaned = _LEADING_PARENTHETICAL.sub("", cleaned, count=1)

    if cleaned.startswith('"') and not raw.startswith('"'):
        cleaned = cleaned[1:]

    if session_context is not None:
        cleaned = session_context.apply(cleaned)

    if not cleaned.strip():
        return LISTENING_FALLBACK
    return cleaned.strip()


def _normalize(sentence: str) -> str:
    return re.sub(r"\s+", " ", sentence).strip().lower()


def _first_candidate(text: str, character_name: str) -> str:
    """Cut the text where the model starts writing the next turn"""
    name = re.escape(character_name) if character_name else None
    markers = [r"\n\s*(?:User|Human|You)\s*:"]
    if name:
        markers.append(rf"\n\s*{name}\s*:")
    markers.append(r"\n\s*-{3,}\s*\n")
    cut = len(text)
    for marker in markers:
        match = re.search(marker, text, re.IGNORECASE)
        if match and match.start() > 0:
            cut = min(cut, match.start())
    return text[:cut]


def clean_chat_response(text: str, character_name: str, recent_turns: Optional[List[str]] = None) -> str:
    """
    Sanitize a chat-completions reply.

    Strips reasoning blocks and control tokens, keeps only the first
    candidate reply, drops sentences that repeat the last few turns verbatim,
    tidies *action* markup and removes quotation marks.
    """
    if not text:
        return LISTENING_FALLBACK

    original_length = len(text)
    cleaned = ThinkingTagParser.strip_thinking_tags(text)
    for pattern in _CONTROL_TOKENS:
        cleaned = pattern.sub("", cleaned)
    cleaned = _ROLE_LINE.sub("", cleaned).strip()

    cleaned = strip_name_prefix(cleaned, character_name).strip()
    cleaned = _first_candidate(cleaned, character_name).strip()

    if recent_turns:
        seen = {_normalize(s) for turn in recent_turns[-3:] for s in _SENTENCE_SPLIT.split(turn or "") if s.strip()}
        sentences = _SENTENCE_SPLIT.split(cleaned)
        kept = [s for s in sentences if len(_normalize(s)) < 12 or _normalize(s) not in seen]
        if kept and len(kept) != len(sentences):
            cleaned = " ".join(kept)

    # Actions span several words; a single wrapped word is a formatting slip
    cleaned = re.sub(r"\*{2,}", "*", cleaned)
    cleaned = re.sub(r"\*([A-Za-z']+)\*", r"\1", cleaned)
    if cleaned.count("*") % 2 == 1:
        cleaned = cleaned + "*"

    cleaned = re.sub(r"[\"“”]", "", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned).strip()

    if original_length - len(cleaned) > 20:
        logger.debug(f"[CLEAN] Removed {original_length - len(cleaned)} chars from chat reply")

    return cleaned or LISTENING_FALLBACK
