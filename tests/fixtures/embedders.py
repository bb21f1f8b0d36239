"""Deterministic embedding providers for tests."""

import hashlib

import numpy as np

from sefer_core.errors import EmbeddingProviderError
from sefer_pipeline.utils.text_cleaning import words

DIM = 8


def hashed_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Bag-of-words vector with md5 buckets; texts sharing words point the same way."""
    vec = np.zeros(dim, dtype=np.float32)
    for w in words(text):
        bucket = int(hashlib.md5(w.encode("utf-8")).hexdigest(), 16) % dim
        vec[bucket] += 1.0
    norm = np.linalg.norm(vec)
    return vec / norm if norm else vec


class FakeEmbedder:
    """Returns fixed vectors for known texts and hashed vectors otherwise."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dimension: int = DIM):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        if text in self.vectors:
            return np.asarray(self.vectors[text], dtype=np.float32)
        return hashed_vector(text, self.dimension)

    def embed_many(self, texts):
        self.calls.append(list(texts))
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return np.vstack([self._vector(t) for t in texts])

    def embed(self, text):
        if not text or not text.strip():
            raise EmbeddingProviderError("cannot embed empty text")
        return self.embed_many([text])[0].tolist()


class FailingEmbedder:
    dimension = DIM

    def embed_many(self, texts):
        raise EmbeddingProviderError("provider down")

    def embed(self, text):
        raise EmbeddingProviderError("provider down")
