"""Conversation indexer for full and incremental sync."""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from ..errors import ConsistencyError, EmbeddingError, ParseError, SourceError
from ..models import Conversation, FileFingerprint, SyncStats, Turn
from ..normalizer import normalize_session, render_turn_text
from ..providers import DEFAULT_FORMAT, get_provider
from ..providers.base import TranscriptProvider
from .database import ConversationStore
from .embeddings import EMBED_BATCH_SIZE, Embedder, embed_texts
from .fingerprint import conversation_id_for_path, source_key, stat_fingerprint, with_hash

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class SyncAction(Enum):
    SKIP = "skip"
    REFRESH = "refresh"  # content unchanged, only mtime/size moved
    IMPORT = "import"
    APPEND = "append"
    REPLACE = "replace"


class ConversationIndexer:
    """Sync transcript files into a ConversationStore.

    Embedding runs before the write transaction opens; each file's
    conversation row, fingerprint and turns commit together.
    """

    def __init__(
        self,
        store: ConversationStore,
        provider: Optional[TranscriptProvider] = None,
        embedder: Optional[Embedder] = None,
        batch_size: int = EMBED_BATCH_SIZE,
    ):
        self.store = store
        self.provider = provider or get_provider(DEFAULT_FORMAT)
        self.embedder = embedder
        self.batch_size = batch_size

    def full_sync(
        self,
        source_root: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SyncStats:
        """
        Re-import every transcript under ``source_root`` regardless of fingerprints.

        Args:
            source_root: Directory to walk, or a single transcript file
            progress_callback: Optional callback(current, total, file_name) for progress

        Returns:
            SyncStats for the run
        """
        return self._run(Path(source_root), force=True, progress_callback=progress_callback)

    def incremental_sync(
        self,
        source_root: Path,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SyncStats:
        """
        Import only new or changed transcripts under ``source_root``.

        Unchanged files are skipped by fingerprint; grown files whose existing
        turns are unchanged get only their new turns appended.
        """
        return self._run(Path(source_root), force=False, progress_callback=progress_callback)

    def _run(
        self,
        source_root: Path,
        force: bool,
        progress_callback: Optional[ProgressCallback],
    ) -> SyncStats:
        start_time = time.time()
        stats = SyncStats()
        mode = "Full sync" if force else "Incremental sync"

        if not source_root.exists():
            logger.warning(f"{mode}: source {source_root} does not exist")
            return stats

        paths = self.provider.discover_files(source_root)
        total = len(paths)
        logger.info(f"{mode}: {total} {self.provider.name} files under {source_root}")

        for i, path in enumerate(paths):
            try:
                action = self._sync_file(path, force, stats)
                logger.debug(f"{path}: {action.value}")
            except (SourceError, ConsistencyError, EmbeddingError) as e:
                stats.failed += 1
                stats.failures.append((str(path), str(e)))
                logger.warning(f"Failed to sync {path}: {e}")

            if progress_callback:
                progress_callback(i + 1, total, path.name)

        stats.time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"{mode} complete: {stats.processed} processed "
            f"({stats.imported} imported, {stats.appended} appended, {stats.replaced} replaced), "
            f"{stats.skipped} skipped, {stats.failed} failed, "
            f"{stats.turns_written} turns in {stats.time_ms}ms"
        )
        return stats

    def _sync_file(self, path: Path, force: bool, stats: SyncStats) -> SyncAction:
        key = source_key(path)
        stored = self.store.get_conversation_by_path(key)
        current = stat_fingerprint(path)
        data = self.provider.read_bytes(path)
        fingerprint = with_hash(current, data)

        stored_fp = stored.fingerprint if stored else None
        stored_hash = stored_fp.content_hash if stored_fp else None

        if not force and stored_hash and stored_hash == fingerprint.content_hash:
            if stored_fp.stat_matches(fingerprint):
                stats.skipped += 1
                return SyncAction.SKIP
            # Touched or copied over with identical bytes
            self.store.update_fingerprint(stored.id, fingerprint)
            stats.skipped += 1
            return SyncAction.REFRESH

        conversation_id = stored.id if stored else conversation_id_for_path(path)
        try:
            parsed = self.provider.parse_bytes(data, path)
            conversation, turns = normalize_session(parsed, conversation_id, key)
        except (ValueError, TypeError, KeyError, AttributeError, IndexError) as e:
            # Valid JSON with fields of unexpected types
            raise ParseError(f"malformed transcript: {e}", path=str(path)) from e
        conversation.fingerprint = fingerprint
        conversation.indexed_at = int(time.time())

        if stored is None:
            action = SyncAction.IMPORT
            new_turns = turns
        elif not force and stored_hash and self._can_append(stored, turns):
            action = SyncAction.APPEND
            new_turns = turns[stored.turn_count:]
        else:
            action = SyncAction.REPLACE
            new_turns = turns

        self._embed(new_turns)
        if action is SyncAction.APPEND and not self._dims_compatible(stored, new_turns):
            # Stored vectors came from a different model; re-embed everything
            action = SyncAction.REPLACE
            new_turns = turns
            self._embed(turns[: stored.turn_count])

        self._write(conversation, new_turns, action, expected_hash=stored_hash, existed=stored is not None)

        stats.processed += 1
        stats.turns_written += len(new_turns)
        if action is SyncAction.IMPORT:
            stats.imported += 1
        elif action is SyncAction.APPEND:
            stats.appended += 1
        else:
            stats.replaced += 1
        return action

    def _can_append(self, stored: Conversation, turns: list[Turn]) -> bool:
        if len(turns) <= stored.turn_count:
            return False
        if self.embedder is not None and stored.turn_count and stored.embedding_dim == 0:
            # Existing turns were never embedded
            return False
        stored_hashes = self.store.get_turn_hashes(stored.id)
        if len(stored_hashes) != stored.turn_count:
            return False
        return all(t.turn_hash == h for t, h in zip(turns, stored_hashes))

    @staticmethod
    def _dims_compatible(stored: Conversation, new_turns: list[Turn]) -> bool:
        if not stored.embedding_dim:
            return True
        return all(t.embedding is None or t.embedding_dim == stored.embedding_dim for t in new_turns)

    def _embed(self, turns: list[Turn]) -> None:
        if self.embedder is None or not turns:
            return
        texts = [render_turn_text(t) for t in turns]
        vectors = embed_texts(self.embedder, texts, batch_size=self.batch_size)
        for turn, vector in zip(turns, vectors):
            turn.embedding = vector

    def _write(
        self,
        conversation: Conversation,
        turns: list[Turn],
        action: SyncAction,
        expected_hash: Optional[str],
        existed: bool,
    ) -> None:
        with self.store.transaction():
            # Another writer may have synced this file since we read it
            current = self.store.get_fingerprint(conversation.source_path)
            current_hash = current.content_hash if current else None
            if (current is not None) != existed or current_hash != expected_hash:
                raise ConsistencyError(
                    f"{conversation.source_path} changed in the store during sync"
                )
            self.store.upsert_conversation(conversation)
            if action is SyncAction.APPEND:
                self.store.append_turns(conversation.id, turns)
            else:
                self.store.replace_turns(conversation.id, turns)


def _indexer(
    store: ConversationStore,
    embedder: Optional[Embedder],
    adapter: Optional[TranscriptProvider | str],
) -> ConversationIndexer:
    provider = adapter
    if isinstance(adapter, str):
        provider = get_provider(adapter)
        if provider is None:
            raise ValueError(f"unknown transcript format {adapter!r}")
    return ConversationIndexer(store, provider=provider, embedder=embedder)


def full_sync(
    source_root: Path,
    store: ConversationStore,
    embedder: Optional[Embedder] = None,
    adapter: Optional[TranscriptProvider | str] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> SyncStats:
    return _indexer(store, embedder, adapter).full_sync(source_root, progress_callback)


def incremental_sync(
    source_root: Path,
    store: ConversationStore,
    embedder: Optional[Embedder] = None,
    adapter: Optional[TranscriptProvider | str] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> SyncStats:
    return _indexer(store, embedder, adapter).incremental_sync(source_root, progress_callback)
