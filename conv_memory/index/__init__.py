"""SQLite index for conversation sync and semantic search."""

from .database import ConversationStore, TurnFilter, open_store
from .embeddings import (
    EMBED_BATCH_SIZE,
    Embedder,
    EmbeddingModelConfig,
    LlamaCppEmbedder,
    OpenAIEmbedder,
)
from .indexer import ConversationIndexer, SyncAction, full_sync, incremental_sync
from .search import (
    ConversationSearch,
    SearchParams,
    search_by_keyword,
    search_by_text,
    search_by_vector,
)

__all__ = [
    "ConversationStore",
    "TurnFilter",
    "open_store",
    "Embedder",
    "EmbeddingModelConfig",
    "LlamaCppEmbedder",
    "OpenAIEmbedder",
    "EMBED_BATCH_SIZE",
    "ConversationIndexer",
    "SyncAction",
    "full_sync",
    "incremental_sync",
    "ConversationSearch",
    "SearchParams",
    "search_by_keyword",
    "search_by_text",
    "search_by_vector",
]
