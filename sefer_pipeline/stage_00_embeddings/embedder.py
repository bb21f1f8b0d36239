"""
Embedding providers.

``embed(text)`` returns one vector; ``embed_many(texts)`` a 2D float32 array.
Failures surface as ``EmbeddingProviderError`` so retrieval can degrade the
vector stream without failing the whole query.
"""

import logging
import os
import random
import time
from typing import Protocol, Sequence

import numpy as np
import requests
import torch
from sentence_transformers import SentenceTransformer

from sefer_core.config import settings
from sefer_core.errors import EmbeddingProviderError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
BASE_DELAY = 1.0
MAX_DELAY = 20.0


class EmbeddingProvider(Protocol):
    dimension: int

    def embed(self, text: str) -> list[float]: ...

    def embed_many(self, texts: Sequence[str]) -> np.ndarray: ...


def _as_matrix(vecs) -> np.ndarray:
    vecs = np.asarray(vecs, dtype=np.float32)
    # ensure 2D
    if vecs.ndim == 1:
        vecs = vecs.reshape(1, -1)
    return vecs


class LocalEmbeddingProvider:
    """sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str | None = None, dimension: int | None = None):
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIM
        self._model = None

    def get_model(self) -> SentenceTransformer:
        if self._model is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
            try:
                self._model = SentenceTransformer(self.model_name, device=device)
            except (NotImplementedError, RuntimeError) as e:
                error_msg = str(e).lower()
                if "meta tensor" not in error_msg and "cannot copy out" not in error_msg:
                    raise EmbeddingProviderError(f"Failed to load model {self.model_name}: {e}") from e
                # let SentenceTransformer handle device placement
                try:
                    self._model = SentenceTransformer(self.model_name)
                except Exception as e2:
                    cache_dir = os.environ.get("HF_HOME", os.path.expanduser("~/.cache/huggingface"))
                    raise EmbeddingProviderError(
                        f"Failed to load model {self.model_name}. "
                        f"The model cache at {cache_dir}/hub/ is likely corrupted. "
                        f"Original error: {e}, Fallback error: {e2}"
                    ) from e2
            except (OSError, ValueError) as e:
                # missing model or unreachable hub
                raise EmbeddingProviderError(f"Failed to load model {self.model_name}: {e}") from e
            logger.info("Loaded embedding model %s on %s", self.model_name, device)
        return self._model

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        model = self.get_model()
        try:
            vecs = model.encode(list(texts), normalize_embeddings=True, convert_to_numpy=True)
        except (RuntimeError, ValueError, TypeError) as e:
            raise EmbeddingProviderError(f"Local embedding failed: {e}") from e
        return _as_matrix(vecs)

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0].tolist()


class RemoteEmbeddingProvider:
    """
    OpenAI-compatible ``/embeddings`` endpoint.

    Each request carries a fixed timeout. Throttling, server errors and
    timeouts are retried with exponential backoff plus jitter, up to
    ``max_retries`` extra attempts, then raised as ``EmbeddingProviderError``.
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        model_name: str | None = None,
        dimension: int | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        session: requests.Session | None = None,
    ):
        self.api_url = api_url or settings.EMBEDDING_API_URL
        self.api_key = api_key or settings.EMBEDDING_API_KEY
        self.model_name = model_name or settings.EMBEDDING_MODEL
        self.dimension = dimension or settings.EMBEDDING_DIM
        self.timeout = timeout or settings.EMBEDDING_TIMEOUT_SECONDS
        self.max_retries = settings.EMBEDDING_MAX_RETRIES if max_retries is None else max_retries
        self.session = session or requests.Session()
        if self.api_key:
            self.session.headers.update({"Authorization": f"Bearer {self.api_key}"})

    def _delay(self, attempt: int, resp: requests.Response | None = None) -> float:
        if resp is not None and resp.headers.get("Retry-After", "").isdigit():
            base = float(resp.headers["Retry-After"])
        else:
            base = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
        return base + random.uniform(0, base * 0.1)

    def _post(self, texts: list[str]) -> list[list[float]]:
        body = {"model": self.model_name, "input": texts}
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            resp = None
            try:
                resp = self.session.post(self.api_url, json=body, timeout=self.timeout)
                if resp.status_code not in RETRYABLE_STATUS:
                    resp.raise_for_status()
                    data = resp.json()["data"]
                    return [item["embedding"] for item in sorted(data, key=lambda d: d.get("index", 0))]
                last_error = EmbeddingProviderError(f"embedding provider returned {resp.status_code}")
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = e
            except (requests.RequestException, KeyError, ValueError) as e:
                # not transient: bad input, auth, bad URL, broken or malformed body
                raise EmbeddingProviderError(f"Embedding request failed: {e}") from e

            if attempt >= self.max_retries:
                break
            delay = self._delay(attempt, resp)
            logger.warning(
                "Embedding provider unavailable (%s), retrying in %.1fs (attempt %d/%d)",
                last_error, delay, attempt + 1, self.max_retries,
            )
            time.sleep(delay)

        raise EmbeddingProviderError(
            f"Embedding failed after {self.max_retries + 1} attempts: {last_error}"
        ) from last_error

    def embed_many(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)
        return _as_matrix(self._post([t.strip() for t in texts]))

    def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingProviderError("cannot embed empty text")
        return self.embed_many([text])[0].tolist()


def get_embedding_provider(model_name: str | None = None) -> EmbeddingProvider:
    backend = settings.EMBEDDING_BACKEND.lower()
    if backend == "local":
        return LocalEmbeddingProvider(model_name=model_name)
    if backend == "remote":
        return RemoteEmbeddingProvider(model_name=model_name)
    raise ValueError(f"Invalid EMBEDDING_BACKEND: {backend}. Must be 'local' or 'remote'.")
