"""Metadata-filtered vector search over stored turn embeddings."""

import heapq
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np

from ..errors import SearchConfigError
from ..models import Hit
from .database import ConversationStore, TurnFilter
from .embeddings import Embedder, embed_texts

logger = logging.getLogger(__name__)

META_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")
SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass
class SearchParams:
    top_k: int = 10
    meta_equals: list[tuple[str, Any]] = field(default_factory=list)
    conversation_ids: Optional[list[str]] = None

    def validate(self) -> None:
        """Raise SearchConfigError if the parameters cannot be executed."""
        if isinstance(self.top_k, bool) or not isinstance(self.top_k, int) or self.top_k <= 0:
            raise SearchConfigError(f"top_k must be a positive integer, got {self.top_k!r}")
        for item in self.meta_equals:
            if not isinstance(item, (tuple, list)) or len(item) != 2:
                raise SearchConfigError(f"metadata filter must be a (key, value) pair, got {item!r}")
            key, value = item
            if not isinstance(key, str) or not META_KEY_PATTERN.match(key):
                raise SearchConfigError(f"invalid metadata key {key!r}")
            if not isinstance(value, SCALAR_TYPES):
                raise SearchConfigError(f"metadata value for {key!r} must be a scalar")
        if self.conversation_ids is not None:
            if isinstance(self.conversation_ids, str) or not all(
                isinstance(cid, str) for cid in self.conversation_ids
            ):
                raise SearchConfigError("conversation_ids must be a list of strings")

    def to_filter(self, embedding_dim: Optional[int] = None) -> TurnFilter:
        return TurnFilter(
            conversation_ids=list(self.conversation_ids) if self.conversation_ids is not None else None,
            meta_equals=[(k, v) for k, v in self.meta_equals],
            embedding_dim=embedding_dim,
        )


def _query_vector(vector: Sequence[float]) -> np.ndarray:
    try:
        query = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise SearchConfigError(f"query vector is not numeric: {e}") from e
    if query.ndim != 1 or query.size == 0:
        raise SearchConfigError("query vector must be a non-empty flat sequence")
    return query


def search_by_vector(
    store: ConversationStore,
    vector: Sequence[float],
    params: SearchParams,
) -> list[Hit]:
    """Rank stored turns by cosine similarity to ``vector``.

    Only turns embedded with the query's dimension are candidates. Ties on
    score break by ascending (conversation_id, turn_index).
    """
    params.validate()
    query = _query_vector(vector)
    query_norm = float(np.linalg.norm(query))
    if not np.isfinite(query_norm) or query_norm == 0.0:
        return []

    start_time = time.time()
    dim = query.size
    # (-score, conversation_id, turn_index) so the smallest keys are the best hits
    best: list[tuple[float, str, int, str, str]] = []
    scanned = 0

    for rows in store.iter_embedding_candidates(params.to_filter(embedding_dim=dim)):
        rows = [r for r in rows if r["embedding"] is not None and len(r["embedding"]) == dim * 4]
        if not rows:
            continue
        matrix = np.frombuffer(b"".join(r["embedding"] for r in rows), dtype="<f4")
        matrix = matrix.reshape(len(rows), dim).astype(np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, dots / (norms * query_norm), 0.0)

        for row, score in zip(rows, scores.tolist()):
            if not np.isfinite(score):
                continue
            best.append((-score, row["conversation_id"], row["turn_index"],
                         row["user_text"], row["assistant_text"]))
        scanned += len(rows)
        if len(best) > params.top_k * 4:
            best = heapq.nsmallest(params.top_k, best)

    top = heapq.nsmallest(params.top_k, best)
    elapsed_ms = int((time.time() - start_time) * 1000)
    logger.debug(f"Vector search scanned {scanned} turns, {len(top)} hits in {elapsed_ms}ms")
    return [
        Hit(
            conversation_id=cid,
            turn_index=idx,
            score=-neg_score,
            user_text=user_text,
            assistant_text=assistant_text,
        )
        for neg_score, cid, idx, user_text, assistant_text in top
    ]


def search_by_text(
    store: ConversationStore,
    embedder: Embedder,
    text: str,
    params: SearchParams,
) -> list[Hit]:
    """Embed ``text`` and run a vector search.

    Parameters are validated before the embedder is called; embedder failures
    surface as EmbeddingError.
    """
    params.validate()
    if not text or not text.strip():
        raise SearchConfigError("query text is empty")
    vector = embed_texts(embedder, [text])[0]
    return search_by_vector(store, vector, params)


def search_by_keyword(
    store: ConversationStore,
    text: str,
    params: SearchParams,
) -> list[Hit]:
    """Full-text fallback over user and assistant text, ranked by bm25."""
    params.validate()
    if not text or not text.strip():
        raise SearchConfigError("query text is empty")
    rows = store.search_turns_fts(text, params.to_filter(), limit=params.top_k)
    return [
        Hit(
            conversation_id=row["conversation_id"],
            turn_index=row["turn_index"],
            score=-row["score"],
            user_text=row["user_text"],
            assistant_text=row["assistant_text"],
        )
        for row in rows
    ]


class ConversationSearch:
    """Search front end: semantic when an embedder is configured, keyword otherwise."""

    def __init__(self, store: ConversationStore, embedder: Optional[Embedder] = None):
        self._store = store
        self._embedder = embedder

    @property
    def semantic(self) -> bool:
        return self._embedder is not None

    def search(self, query: str, params: Optional[SearchParams] = None) -> list[Hit]:
        params = params or SearchParams()
        if self._embedder is None:
            return search_by_keyword(self._store, query, params)
        return search_by_text(self._store, self._embedder, query, params)
