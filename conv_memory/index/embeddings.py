"""Embedding providers: local GGUF models via llama.cpp, or the OpenAI API."""

import importlib.util
import logging
import math
import os
import struct
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..errors import EmbeddingError

logger = logging.getLogger(__name__)

HAS_LLAMA_CPP = importlib.util.find_spec("llama_cpp") is not None
HAS_OPENAI = importlib.util.find_spec("openai") is not None

if TYPE_CHECKING:
    from llama_cpp import Llama as LlamaType
    from openai import OpenAI as OpenAIType

EMBED_BATCH_SIZE = 32
OPENAI_EMBEDDING_MODEL = "text-embedding-3-small"
OPENAI_MAX_CHARS = 28000


def serialize_embedding(embedding: list[float]) -> bytes:
    """Pack a vector as little-endian float32."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    float_count = len(blob) // 4
    return list(struct.unpack(f"<{float_count}f", blob[: float_count * 4]))


def _check_vectors(vectors: list, expected: int) -> list[list[float]]:
    if len(vectors) != expected:
        raise EmbeddingError(f"embedder returned {len(vectors)} vectors for {expected} inputs")
    checked = []
    dim = None
    for vector in vectors:
        if not vector or not all(isinstance(x, (int, float)) for x in vector):
            raise EmbeddingError("embedder returned a non-flat or empty vector")
        if dim is None:
            dim = len(vector)
        elif len(vector) != dim:
            raise EmbeddingError(f"embedder returned mixed dimensions ({dim} and {len(vector)})")
        if not all(math.isfinite(x) for x in vector):
            raise EmbeddingError("embedder returned non-finite values")
        checked.append([float(x) for x in vector])
    return checked


class Embedder(ABC):
    """Maps text to fixed-dimension vectors."""

    name: str = ""

    @property
    def dimension(self) -> Optional[int]:
        """Vector dimension, known once the model has produced one."""
        return None

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]


def embed_texts(
    embedder: Embedder,
    texts: list[str],
    batch_size: int = EMBED_BATCH_SIZE,
) -> list[list[float]]:
    """Embed texts in batches, validating count and dimension of the output."""
    vectors: list[list[float]] = []
    for start in range(0, len(texts), batch_size):
        batch = texts[start:start + batch_size]
        try:
            produced = embedder.embed_batch(batch)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"embedding failed: {e}") from e
        vectors.extend(_check_vectors(produced, len(batch)))
    if vectors and len({len(v) for v in vectors}) > 1:
        raise EmbeddingError("embedder changed dimension between batches")
    return vectors


@dataclass
class EmbeddingModelConfig:
    model_path: Path
    gpu_layers: int = 0
    threads: Optional[int] = None
    threads_batch: Optional[int] = None


class LlamaCppEmbedder(Embedder):
    """Embeds text with a local GGUF model through llama-cpp-python.

    The model is loaded lazily on first use; load and inference share one lock
    since a llama.cpp context is not safe for concurrent calls.
    """

    name = "llama-cpp"

    def __init__(self, config: EmbeddingModelConfig):
        self.config = config
        self._model: Optional["LlamaType"] = None
        self._dimension: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def load(self) -> None:
        with self._lock:
            self._load_locked()

    def _load_locked(self) -> None:
        if self._model is not None:
            return
        if not HAS_LLAMA_CPP:
            raise EmbeddingError("llama-cpp-python is not installed (pip install conv-memory[llama])")
        model_path = Path(self.config.model_path)
        if not model_path.is_file():
            raise EmbeddingError(f"embedding model not found: {model_path}")

        from llama_cpp import Llama

        logger.info(f"Loading embedding model {model_path}")
        try:
            self._model = Llama(
                model_path=str(model_path),
                embedding=True,
                n_gpu_layers=self.config.gpu_layers,
                n_threads=self.config.threads,
                n_threads_batch=self.config.threads_batch,
                verbose=False,
            )
        except Exception as e:
            raise EmbeddingError(f"failed to load embedding model {model_path}: {e}") from e
        self._dimension = self._model.n_embd()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        with self._lock:
            self._load_locked()
            try:
                vectors = self._model.embed(texts)
            except Exception as e:
                raise EmbeddingError(f"llama.cpp inference failed: {e}") from e
        if vectors and vectors[0] and isinstance(vectors[0][0], list):
            raise EmbeddingError("model returned token-level embeddings; use a model with pooling")
        return _check_vectors(vectors, len(texts))


class OpenAIEmbedder(Embedder):
    """Generates embeddings through the OpenAI embeddings API."""

    name = "openai"

    def __init__(self, model: str = OPENAI_EMBEDDING_MODEL, api_key: Optional[str] = None):
        self.model = model
        self._api_key = api_key
        self._client: Optional["OpenAIType"] = None
        self._dimension: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def _get_client(self) -> "OpenAIType":
        with self._lock:
            if self._client is None:
                if not HAS_OPENAI:
                    raise EmbeddingError("openai package is not installed")
                api_key = self._api_key or os.environ.get("OPENAI_API_KEY")
                if not api_key:
                    raise EmbeddingError("OPENAI_API_KEY is not set")
                from openai import OpenAI
                self._client = OpenAI(api_key=api_key)
                logger.debug("OpenAI embeddings initialized")
            return self._client

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        client = self._get_client()
        try:
            response = client.embeddings.create(
                model=self.model,
                input=[t[:OPENAI_MAX_CHARS] for t in texts],
            )
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e

        embeddings: list = [None for _ in texts]
        for item in response.data:
            embeddings[item.index] = item.embedding
        if any(e is None for e in embeddings):
            raise EmbeddingError("OpenAI response is missing embeddings")
        vectors = _check_vectors(embeddings, len(texts))
        self._dimension = len(vectors[0])
        return vectors
