"""
Message classification and templated replies

Greetings and requests for comfort get a reply seeded from the character's
signature phrases; everything else goes through a dynamic prompt strategy.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class MessageType(str, Enum):
    GREETING = "greeting"
    QUESTION = "question"
    COMPLIMENT = "compliment"
    COMFORT_NEEDED = "comfort_needed"
    GENERAL = "general"


# Checked in order; first category with a matching keyword wins
MESSAGE_KEYWORDS: List[Tuple[MessageType, List[str]]] = [
    (MessageType.GREETING, ["hello", "hi", "hey", "good morning", "good evening", "how are you"]),
    (MessageType.QUESTION, ["what", "how", "why", "when", "where", "who", "can you", "do you"]),
    (MessageType.COMPLIMENT, ["beautiful", "amazing", "wonderful", "love", "like you", "gorgeous"]),
    (MessageType.COMFORT_NEEDED, ["sad", "worried", "anxious", "help", "problem", "difficult", "hard time"]),
]

_KEYWORD_PATTERNS = [
    (message_type, re.compile(r"\b(" + "|".join(re.escape(k) for k in keywords) + r")\b"))
    for message_type, keywords in MESSAGE_KEYWORDS
]

TEMPLATE_TYPES = {MessageType.GREETING, MessageType.COMFORT_NEEDED}


def detect_message_type(message: str) -> MessageType:
    lowered = message.lower()
    for message_type, pattern in _KEYWORD_PATTERNS:
        if pattern.search(lowered):
            return message_type
    return MessageType.GENERAL


def build_template_responses(character) -> Dict[MessageType, List[str]]:
    """Candidate replies per message type; the first entry is the preferred one"""
    name = character.name
    affirmation = character.affirmation
    return {
        MessageType.GREETING: [
            character.greeting or "The stars have aligned for our meeting, dear one.",
            f"Welcome, traveler. {name} greets you warmly.",
            "Ah, a kindred spirit approaches. How may I assist you today?",
        ],
        MessageType.QUESTION: [
            f"{affirmation or 'Indeed'}, let me share what I know.",
            "That's a thoughtful question. Allow me to reflect...",
        ],
        MessageType.COMPLIMENT: [
            "Your words warm my heart like starlight.",
            f"{affirmation or 'Thank you'}, dear one.",
        ],
        MessageType.COMFORT_NEEDED: [
            character.comfort or "Even in darkness, the moon guides us home.",
            "In times of trouble, remember that this too shall pass.",
        ],
        MessageType.GENERAL: [
            f"{affirmation or 'Indeed'}, I understand.",
            "Tell me more about your thoughts, dear one.",
        ],
    }


def get_template_response(character, message_type: MessageType) -> str:
    responses = build_template_responses(character)
    return responses.get(MessageType(message_type), responses[MessageType.GENERAL])[0]


def should_use_template(message: str) -> bool:
    return detect_message_type(message) in TEMPLATE_TYPES


def get_time_of_day(now: Optional[datetime] = None) -> str:
    hour = (now or datetime.now()).hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "night"


_PLACEHOLDER_RE = re.compile(r"\{\{\s*(user|char|character_name|location|time_of_day)\s*\}\}", re.IGNORECASE)


def process_message_templates(
    text: str,
    character_name: str,
    user_name: str = "user",
    location: Optional[str] = None,
    time_of_day: Optional[str] = None,
) -> str:
    """Replace {{user}}, {{char}}, {{character_name}}, {{location}} and {{time_of_day}}"""
    values = {
        "user": user_name or "user",
        "char": character_name,
        "character_name": character_name,
        "location": location or "here",
        "time_of_day": time_of_day or get_time_of_day(),
    }
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1).lower()], text)


@dataclass
class SessionContext:
    """Values available to {{...}} placeholders for one chat turn"""
    character_name: str
    character_id: Optional[str] = None
    user_name: str = "user"
    location: Optional[str] = None
    time_of_day: Optional[str] = None
    session_id: Optional[str] = None

    def apply(self, text: str) -> str:
        return process_message_templates(
            text,
            character_name=self.character_name,
            user_name=self.user_name,
            location=self.location,
            time_of_day=self.time_of_day,
        )
