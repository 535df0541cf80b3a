"""
Named, swappable embedding backends.

A vector table records the name of the embedding function it was built
with; the name is resolved here into an :class:`EmbeddingFunction`.

Names
-----
``hashing``                 -- deterministic feature-hashed bag of words (offline)
``hashing:<dims>``          -- same, with a custom dimension
``ollama:<model>``          -- Ollama ``/api/embed`` endpoint
``openai:<model>``          -- OpenAI Embeddings API (text-embedding-3-small, ...)
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np
import requests

from ..errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HASHING_DIMENSIONS = 384
OPENAI_EMBED_MODEL = "text-embedding-3-small"
BATCH_SIZE = 100
MAX_RETRIES = 3

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class EmbeddingFunction(ABC):
    """Maps texts to fixed-length vectors. Must be deterministic."""

    #: Registered name, stored alongside every vector table.
    name: str = ""
    #: Largest input (in estimated tokens) the backend accepts per text.
    max_tokens: int = 512

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per input in the same order.

        Raises :class:`EmbeddingError` on backend failure.
        """

    def embed_one(self, text: str) -> list[float]:
        return self.embed([text])[0]


# ---------------------------------------------------------------------------
# Hashing backend (offline, numpy)
# ---------------------------------------------------------------------------

class HashingEmbedding(EmbeddingFunction):
    """
    Feature-hashed bag-of-words vectors, L2 normalised.

    Every lower-cased word is hashed (blake2b, so the mapping is stable
    across processes) into one of *dimensions* buckets with a +/-1 sign.
    Texts sharing words end up close in cosine distance.
    """

    max_tokens = 512

    def __init__(self, dimensions: int = HASHING_DIMENSIONS) -> None:
        if dimensions <= 0:
            raise ConfigurationError(f"Invalid hashing dimension: {dimensions}")
        self.dimensions = dimensions
        self.name = "hashing" if dimensions == HASHING_DIMENSIONS else f"hashing:{dimensions}"

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if (value >> 63) & 1 else -1.0
        return value % self.dimensions, sign

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            vec = np.zeros(self.dimensions, dtype=np.float32)
            for token in _TOKEN_RE.findall(text.lower()):
                idx, sign = self._bucket(token)
                vec[idx] += sign
            norm = np.linalg.norm(vec)
            if norm > 0:
                vec /= norm
            vectors.append(vec.tolist())
        return vectors


# ---------------------------------------------------------------------------
# Ollama backend (requests)
# ---------------------------------------------------------------------------

class OllamaEmbedding(EmbeddingFunction):

    max_tokens = 2048

    def __init__(self, model: str, base_url: str = "http://localhost:11434") -> None:
        self.model = model
        self.name = f"ollama:{model}"
        # Derive the API root for endpoints like /api/embed
        if "/api/" in base_url:
            self._api_root = base_url.rsplit("/api/", 1)[0]
        else:
            self._api_root = base_url.rstrip("/")

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        url = f"{self._api_root}/api/embed"
        payload = {"model": self.model, "input": texts}
        try:
            response = requests.post(url, json=payload, timeout=(10, 120))
            response.raise_for_status()
            embeddings = response.json().get("embeddings") or []
        except (requests.exceptions.RequestException, ValueError) as e:
            raise EmbeddingError(f"[Ollama] Embedding error: {e}") from e
        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"[Ollama] Expected {len(texts)} embeddings, got {len(embeddings)}")
        return embeddings


# ---------------------------------------------------------------------------
# OpenAI backend (openai SDK)
# ---------------------------------------------------------------------------

class OpenAIEmbedding(EmbeddingFunction):

    max_tokens = 8191

    def __init__(self, model: str = OPENAI_EMBED_MODEL, api_key: str = "",
                 base_url: Optional[str] = None) -> None:
        self.model = model
        self.name = f"openai:{model}"
        self._api_key = api_key
        self._base_url = base_url
        self._client = None  # lazy init

    def _get_client(self):
        """Return an openai.OpenAI client, raising if not installed or no key."""
        if self._client is not None:
            return self._client
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise ImportError(
                "openai package is required for openai embeddings. "
                "Install it with: pip install 'vaultkeeper[openai]'"
            ) from exc
        if not self._api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set.")
        self._client = openai.OpenAI(api_key=self._api_key, base_url=self._base_url)
        return self._client

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts via the OpenAI Embeddings API.

        Retries up to MAX_RETRIES times with exponential back-off on failure.
        """
        client = self._get_client()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = client.embeddings.create(model=self.model, input=texts)
                return [item.embedding for item in response.data]
            except Exception as exc:
                if attempt < MAX_RETRIES:
                    wait = 2 ** attempt
                    logger.warning(
                        "Embedding API error (attempt %d/%d): %s, retrying in %ds",
                        attempt, MAX_RETRIES, exc, wait,
                    )
                    time.sleep(wait)
                else:
                    raise EmbeddingError(
                        f"Embedding API failed after {MAX_RETRIES} attempts: {exc}"
                    ) from exc
        return []  # unreachable

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for batch_start in range(0, len(texts), BATCH_SIZE):
            vectors.extend(self._embed_batch(texts[batch_start: batch_start + BATCH_SIZE]))
        return vectors


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

EmbeddingFactory = Callable[[str, dict], EmbeddingFunction]

_FACTORIES: dict[str, EmbeddingFactory] = {}


def register_embedding_backend(prefix: str, factory: EmbeddingFactory) -> None:
    """
    Register *factory* for names of the form ``prefix`` or ``prefix:<arg>``.

    The factory receives the text after the colon (may be empty) and the
    keyword options passed to :func:`get_embedding_function`.
    """
    _FACTORIES[prefix] = factory


def _hashing_factory(arg: str, options: dict) -> EmbeddingFunction:
    if not arg:
        return HashingEmbedding()
    try:
        return HashingEmbedding(int(arg))
    except ValueError:
        raise ConfigurationError(f"Invalid hashing dimension: {arg!r}") from None


def _ollama_factory(arg: str, options: dict) -> EmbeddingFunction:
    if not arg:
        raise ConfigurationError("Ollama embedding backend needs a model: 'ollama:<model>'")
    return OllamaEmbedding(arg, base_url=options.get("ollama_base_url") or "http://localhost:11434")


def _openai_factory(arg: str, options: dict) -> EmbeddingFunction:
    return OpenAIEmbedding(
        arg or OPENAI_EMBED_MODEL,
        api_key=options.get("openai_api_key") or "",
        base_url=options.get("openai_base_url"),
    )


register_embedding_backend("hashing", _hashing_factory)
register_embedding_backend("ollama", _ollama_factory)
register_embedding_backend("openai", _openai_factory)


def get_embedding_function(name: str, **options) -> EmbeddingFunction:
    """
    Resolve an embedding backend by name.

    Parameters
    ----------
    name:
        ``"<prefix>"`` or ``"<prefix>:<arg>"``, e.g. ``"ollama:nomic-embed-text"``.
    **options:
        Backend settings (``ollama_base_url``, ``openai_api_key``,
        ``openai_base_url``).

    Raises
    ------
    ConfigurationError
        If no backend is registered under the prefix.
    """
    if not name:
        raise ConfigurationError("No embedding backend name given.")
    prefix, _, arg = name.partition(":")
    factory = _FACTORIES.get(prefix)
    if factory is None:
        raise ConfigurationError(
            f"Unknown embedding backend '{name}'. Known: {', '.join(sorted(_FACTORIES))}"
        )
    return factory(arg, options)
