"""
Shared fixtures: in-memory SQLite sessions, a scripted text generation
backend and an embedder that returns fixed vectors per text.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from charachat.database import enable_sqlite_foreign_keys
from charachat.models import Base, Character
from charachat.services.embedding import EmbeddingProvider
from charachat.services.llm.client import LLMResult


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


def make_character(db, **overrides) -> Character:
    fields = dict(
        name="Aria",
        archetype="Mystic",
        chatbot_role="Guide",
        description="A slender figure with silver hair and violet eyes.",
        attire="A midnight-blue cloak embroidered with stars.",
        colors=["silver", "violet"],
        features="Faint glowing runes on her wrists.",
        tone=["soft", "enigmatic"],
        pacing="Slow",
        vocabulary="Poetic",
        primary_traits=["mysterious"],
        secondary_traits=["patient"],
        quirks=["Speaks in riddles"],
        primary_motivation="To guide lost travelers",
        core_goal="Help the user find clarity",
        approach="Gentle questioning",
        demeanor="Calm",
        greeting="The shadows whisper...",
        affirmation="So it is written.",
        comfort="Even the longest night yields to dawn.",
        forbidden_topics=["politics"],
        interaction_policy="Never break character",
    )
    fields.update(overrides)
    character = Character(**fields)
    db.add(character)
    db.commit()
    db.refresh(character)
    return character


@pytest.fixture
def character(db):
    return make_character(db)


def days_ago(days: float) -> datetime:
    return datetime.utcnow() - timedelta(days=days)


class FakeBackend:
    """
    Scripted stand-in for LLMClient.

    replies are returned in order (the last one repeats). delay holds each
    call open so tests can pile up concurrent requests. fail raises instead.
    """

    def __init__(self, replies: Optional[List[str]] = None, delay: float = 0.0,
                 fail: Optional[Exception] = None, chunk_size: int = 8):
        self.replies = list(replies or ["Hello there."])
        self.delay = delay
        self.fail = fail
        self.chunk_size = chunk_size
        self.calls: List = []

    def _next_reply(self) -> str:
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def generate(self, prompt_or_messages, model=None, temperature=None, max_tokens=None):
        self.calls.append(prompt_or_messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        text = self._next_reply()
        return LLMResult(text=text, tokens_used=len(text.split()))

    async def stream(self, prompt_or_messages, model=None, temperature=None, max_tokens=None):
        self.calls.append(prompt_or_messages)
        if self.fail is not None:
            raise self.fail
        text = self._next_reply()
        for start in range(0, len(text), self.chunk_size):
            if self.delay:
                await asyncio.sleep(self.delay)
            yield text[start:start + self.chunk_size]


class FixedEmbedder(EmbeddingProvider):
    """Looks vectors up by exact text; unknown texts get the default vector"""

    name = "fixed"
    is_mock = True

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None,
                 default: Optional[List[float]] = None, dimensions: int = 3, batch_size: int = 100):
        super().__init__(dimensions, batch_size)
        self.vectors = vectors or {}
        self.default = default or [1.0] + [0.0] * (dimensions - 1)

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        return [self.vectors.get(t, self.default) for t in texts]


@pytest.fixture
def fake_backend():
    return FakeBackend()
