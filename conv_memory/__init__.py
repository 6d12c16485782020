"""ConvMemory - searchable memory of coding-agent conversations."""

__version__ = "0.1.0"

from .errors import (  # noqa: E402
    ConsistencyError,
    ConvMemoryError,
    EmbeddingError,
    ParseError,
    SearchConfigError,
    SourceError,
    StorageError,
    StorageOpenError,
)
from .index import (  # noqa: E402
    ConversationStore,
    Embedder,
    SearchParams,
    full_sync,
    incremental_sync,
    open_store,
    search_by_keyword,
    search_by_text,
    search_by_vector,
)
from .models import Conversation, Hit, SyncStats, Turn  # noqa: E402

__all__ = [
    "__version__",
    "ConvMemoryError",
    "SourceError",
    "ParseError",
    "ConsistencyError",
    "StorageError",
    "StorageOpenError",
    "SearchConfigError",
    "EmbeddingError",
    "ConversationStore",
    "Embedder",
    "SearchParams",
    "open_store",
    "full_sync",
    "incremental_sync",
    "search_by_text",
    "search_by_vector",
    "search_by_keyword",
    "Conversation",
    "Turn",
    "Hit",
    "SyncStats",
]
