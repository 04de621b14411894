"""
Embedding Providers

Turns text into fixed-length vectors for memory storage and retrieval.
The provider is picked once, when the service is constructed:

- litellm: remote embedding endpoint (OpenAI and compatible) via litellm.aembedding
- sentence_transformers: local model, lazy-loaded on first use
- mock: deterministic hashed vectors, no network, used when nothing is configured
"""

import asyncio
import functools
import hashlib
import logging
import re
from typing import List, Optional, Dict, Any

import numpy as np
import litellm

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """Base class. Subclasses implement _embed_many."""

    name = "base"
    is_mock = False

    def __init__(self, dimensions: int, batch_size: int = 100):
        self.dimensions = dimensions
        self.batch_size = batch_size

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError

    async def embed(self, text: str) -> List[float]:
        """Embed a single text. Raises on provider failure."""
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        vectors = await self._embed_many([text])
        if len(vectors) != 1:
            raise RuntimeError(f"Expected 1 embedding, got {len(vectors)}")
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[Optional[List[float]]]:
        """
        Embed many texts in provider-sized batches.

        Returns a list aligned with the input. A batch that fails or comes back
        with the wrong number of vectors yields None for each of its texts so the
        caller can record which chunks are missing.
        """
        results: List[Optional[List[float]]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            try:
                vectors = await self._embed_many(batch)
                if len(vectors) != len(batch):
                    raise RuntimeError(f"Expected {len(batch)} embeddings, got {len(vectors)}")
                results.extend(vectors)
            except Exception as e:
                logger.error(f"[EMBED] Batch {start // self.batch_size + 1} failed ({self.name}): {e}")
                results.extend([None] * len(batch))
        return results

    async def health_check(self) -> Dict[str, Any]:
        try:
            vector = await self.embed("health check")
            return {
                "status": "healthy",
                "provider": self.name,
                "dimensions": len(vector),
                "mock": self.is_mock,
            }
        except Exception as e:
            logger.error(f"[EMBED] Health check failed: {e}")
            return {
                "status": "unhealthy",
                "provider": self.name,
                "error": str(e),
                "mock": self.is_mock,
            }


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    name = "litellm"

    def __init__(self, model: str, api_key: str = "", api_base: Optional[str] = None,
                 dimensions: int = 1536, batch_size: int = 100):
        super().__init__(dimensions, batch_size)
        self.model = model
        self.api_key = api_key
        self.api_base = api_base

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        params = {"model": self.model, "input": texts}
        if self.api_key:
            params["api_key"] = self.api_key
        if self.api_base:
            params["api_base"] = self.api_base
        response = await litellm.aembedding(**params)

        vectors = []
        for item in response.data:
            embedding = item["embedding"] if isinstance(item, dict) else item.embedding
            vectors.append(list(embedding))
        return vectors


class SentenceTransformerEmbeddingProvider(EmbeddingProvider):
    name = "sentence_transformers"

    def __init__(self, model_name: str, batch_size: int = 100):
        super().__init__(dimensions=0, batch_size=batch_size)
        self.model_name = model_name
        self.model = None

    def _ensure_model_loaded(self):
        """Lazy-load the embedding model on first use"""
        if self.model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            from sentence_transformers import SentenceTransformer
            self.model = SentenceTransformer(self.model_name)
            self.dimensions = self.model.get_sentence_embedding_dimension()
            logger.info(f"Embedding model loaded successfully. Dimension: {self.dimensions}")

    def _encode(self, texts: List[str]) -> List[List[float]]:
        self._ensure_model_loaded()
        vectors = self.model.encode(texts, convert_to_numpy=True)
        return [v.tolist() for v in vectors]

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        return await asyncio.to_thread(self._encode, texts)


_WORD_RE = re.compile(r"[a-z0-9']+")
WORD_VECTOR_CACHE_SIZE = 4096


@functools.lru_cache(maxsize=WORD_VECTOR_CACHE_SIZE)
def _word_vector(word: str, dimensions: int) -> np.ndarray:
    seed = int.from_bytes(hashlib.sha256(word.encode("utf-8")).digest()[:8], "little")
    vector = np.random.default_rng(seed).standard_normal(dimensions)
    vector.setflags(write=False)
    return vector


class DeterministicMockProvider(EmbeddingProvider):
    """
    Hash-seeded bag-of-words vectors.

    Each word maps to a fixed pseudo-random vector; a text is the normalized
    sum of its words. Identical text gives identical vectors and texts sharing
    words land close together, which is enough for offline runs and tests.
    """

    name = "mock"
    is_mock = True

    def __init__(self, dimensions: int = 384, batch_size: int = 100):
        super().__init__(dimensions, batch_size)

    def vectorize(self, text: str) -> List[float]:
        words = _WORD_RE.findall(text.lower()) or [text.strip().lower()]
        total = np.zeros(self.dimensions)
        for word in words:
            total += _word_vector(word, self.dimensions)
        norm = np.linalg.norm(total)
        if norm > 0:
            total = total / norm
        return total.tolist()

    async def _embed_many(self, texts: List[str]) -> List[List[float]]:
        return [self.vectorize(t) for t in texts]


def create_embedding_provider(config) -> EmbeddingProvider:
    """Pick the embedding provider from settings"""
    provider = config.embedding_provider.lower()
    batch_size = config.embedding_batch_size

    if provider == "auto":
        provider = "litellm" if config.embedding_api_key else "mock"
        if provider == "mock":
            logger.warning("[EMBED] No embedding API key configured, using deterministic mock embeddings")

    if provider == "litellm":
        return LiteLLMEmbeddingProvider(
            model=config.embedding_model,
            api_key=config.embedding_api_key,
            dimensions=config.embedding_dimensions,
            batch_size=batch_size,
        )
    if provider == "sentence_transformers":
        return SentenceTransformerEmbeddingProvider(config.local_embedding_model, batch_size=batch_size)
    if provider == "mock":
        return DeterministicMockProvider(dimensions=config.embedding_dimensions, batch_size=batch_size)

    raise ValueError(f"Unknown embedding provider: {config.embedding_provider}")


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 if either is all zeros"""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def chunk_text(text: str, max_chunk_size: int = 800, overlap: int = 100, separator: str = "\n\n") -> List[str]:
    """
    Split text into overlapping windows.

    A window prefers to end right after a separator when one falls inside its
    last 20%. Consecutive windows share `overlap` characters. Whitespace-only
    pieces are dropped.
    """
    if overlap >= max_chunk_size:
        raise ValueError("overlap must be smaller than max_chunk_size")
    if not text or not text.strip():
        return []
    if len(text) <= max_chunk_size:
        return [text.strip()]

    chunks = []
    start = 0
    while start < len(text):
        end = min(start + max_chunk_size, len(text))
        if end < len(text):
            split_at = text.rfind(separator, start, end)
            if split_at > end - max_chunk_size * 0.2:
                end = split_at + len(separator)

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)

        if end >= len(text):
            break
        start = max(end - overlap, start + 1)

    return chunks
