"""Tests for full and incremental sync."""

import os

import pytest

from conv_memory.index.fingerprint import conversation_id_for_path, source_key, with_hash
from conv_memory.index.indexer import ConversationIndexer, SyncAction, full_sync, incremental_sync
from conv_memory.models import FileFingerprint
from conv_memory.providers import get_provider
from conv_memory.providers.codex import CodexProvider

from conftest import FakeEmbedder, rollout_records, write_records, write_rollout


def stored(store, path):
    return store.get_conversation_by_path(source_key(path))


class TestIncrementalSync:
    """Tests for the per-file sync decision."""

    def test_import_then_skip(self, store, embedder, sessions_dir):
        """Test a second run over unchanged files is a no-op."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)

        first = incremental_sync(sessions_dir, store, embedder)
        assert (first.processed, first.imported, first.skipped) == (1, 1, 0)
        assert first.turns_written == 3

        second = incremental_sync(sessions_dir, store, embedder)
        assert (second.processed, second.skipped, second.failed) == (0, 1, 0)
        assert len(embedder.texts) == 3

        conv = stored(store, path)
        assert conv.id == conversation_id_for_path(path)
        assert conv.turn_count == 3
        assert conv.embedding_dim == 8
        assert conv.metadata["project"] == "alpha"
        assert conv.metadata["session_id"] == "sess-1"

    def test_append_embeds_only_new_turns(self, store, embedder, sessions_dir):
        """Test a grown file with an unchanged prefix is appended."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)
        hashes = store.get_turn_hashes(stored(store, path).id)

        write_rollout(path, 5)
        stats = incremental_sync(sessions_dir, store, embedder)

        assert (stats.processed, stats.appended, stats.turns_written) == (1, 1, 2)
        assert len(embedder.texts) == 5
        conv = stored(store, path)
        assert conv.turn_count == 5
        assert store.get_turn_hashes(conv.id)[:3] == hashes
        assert conv.prompt_tokens == sum(100 + i for i in range(5))

    def test_edited_prefix_replaces(self, store, embedder, sessions_dir):
        """Test changing an early turn forces a full re-import."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)

        records = rollout_records(5)
        records[3]["payload"]["content"][0]["text"] = "Something else entirely"
        write_records(path, records)
        stats = incremental_sync(sessions_dir, store, embedder)

        assert (stats.replaced, stats.turns_written) == (1, 5)
        assert len(embedder.texts) == 3 + 5
        assert store.get_turn(stored(store, path).id, 0).assistant_text == "Something else entirely"

    def test_shrunk_file_replaces(self, store, embedder, sessions_dir):
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 5)
        incremental_sync(sessions_dir, store, embedder)

        write_rollout(path, 2)
        stats = incremental_sync(sessions_dir, store, embedder)

        assert stats.replaced == 1
        conv = stored(store, path)
        assert conv.turn_count == 2
        assert store.get_turn(conv.id, 2) is None

    def test_same_stat_different_bytes(self, store, embedder, sessions_dir):
        """Test a content change is detected even when size and mtime match."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3, topic="bug")
        incremental_sync(sessions_dir, store, embedder)
        before = path.stat()

        write_rollout(path, 3, topic="bog")
        os.utime(path, ns=(before.st_atime_ns, before.st_mtime_ns))
        assert path.stat().st_size == before.st_size

        stats = incremental_sync(sessions_dir, store, embedder)
        assert stats.replaced == 1
        conv = stored(store, path)
        assert "bog" in store.get_turn(conv.id, 0).user_text

    def test_touch_refreshes_fingerprint(self, store, embedder, sessions_dir):
        """Test an mtime-only change updates the fingerprint without re-importing."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)
        st = path.stat()
        os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 5_000_000_000))

        stats = incremental_sync(sessions_dir, store, embedder)

        assert (stats.processed, stats.skipped) == (0, 1)
        assert len(embedder.texts) == 3
        assert stored(store, path).fingerprint.mtime_ns == st.st_mtime_ns + 5_000_000_000

    def test_unembedded_prefix_replaces(self, store, embedder, sessions_dir):
        """Test an append is refused when stored turns were never embedded."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store)

        write_rollout(path, 4)
        stats = incremental_sync(sessions_dir, store, embedder)

        assert stats.replaced == 1
        assert len(embedder.texts) == 4
        assert store.count_turns(embedded_only=True) == 4

    def test_dimension_change_replaces(self, store, embedder, sessions_dir):
        """Test appending with a different embedding model re-embeds the prefix."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)

        wider = FakeEmbedder(dim=16)
        write_rollout(path, 5)
        stats = incremental_sync(sessions_dir, store, wider)

        assert (stats.appended, stats.replaced, stats.turns_written) == (0, 1, 5)
        conv = stored(store, path)
        assert conv.embedding_dim == 16
        assert store.get_stats()["embedding_dims"] == {16: 5}

    def test_concurrent_writer_detected(self, store, embedder, sessions_dir):
        """Test a fingerprint change between read and write fails the file."""
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)
        conversation_id = stored(store, path).id

        class RacingEmbedder(FakeEmbedder):
            def embed_batch(self, texts):
                store.update_fingerprint(conversation_id, FileFingerprint(1, 1, "someone-else"))
                return super().embed_batch(texts)

        write_rollout(path, 5)
        stats = incremental_sync(sessions_dir, store, RacingEmbedder())

        assert (stats.processed, stats.failed) == (0, 1)
        assert "changed in the store" in stats.failures[0][1]
        assert stored(store, path).turn_count == 3

    def test_bad_file_does_not_stop_run(self, store, embedder, sessions_dir):
        write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        (sessions_dir / "rollout-b.jsonl").write_text("{not json\n")
        write_rollout(sessions_dir / "nested" / "rollout-c.jsonl", 1)

        stats = incremental_sync(sessions_dir, store, embedder)

        assert (stats.processed, stats.failed) == (2, 1)
        assert stats.failures[0][0].endswith("rollout-b.jsonl")
        assert "line 1" in stats.failures[0][1]
        assert store.count_turns() == 3

    def test_missing_root(self, store, tmp_path):
        stats = incremental_sync(tmp_path / "nowhere", store)
        assert stats.total == 0

    def test_single_file_source(self, store, sessions_dir):
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        write_rollout(sessions_dir / "rollout-b.jsonl", 2)
        stats = incremental_sync(path, store)
        assert stats.imported == 1
        assert store.count_conversations() == 1

    def test_progress_callback(self, store, sessions_dir):
        write_rollout(sessions_dir / "rollout-a.jsonl", 1)
        write_rollout(sessions_dir / "rollout-b.jsonl", 1)
        calls = []
        incremental_sync(sessions_dir, store, progress_callback=lambda *args: calls.append(args))
        assert calls == [(1, 2, "rollout-a.jsonl"), (2, 2, "rollout-b.jsonl")]

    def test_malformed_fields_isolated(self, store, sessions_dir):
        """Test a transcript with oddly typed fields imports without aborting the run."""
        write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        records = rollout_records(2, session_id="sess-b")
        records[4]["payload"]["info"]["last_token_usage"]["input_tokens"] = "lots"
        del records[0]["payload"]["cwd"]
        records[1]["payload"]["cwd"] = 42
        path = write_records(sessions_dir / "rollout-b.jsonl", records)
        write_rollout(sessions_dir / "rollout-c.jsonl", 2)

        stats = incremental_sync(sessions_dir, store)

        assert (stats.processed, stats.failed) == (3, 0)
        conv = stored(store, path)
        assert "project" not in conv.metadata
        assert store.get_turn(conv.id, 0).telemetry.prompt_tokens == 0

    def test_adapter_type_error_fails_file(self, store, sessions_dir):
        """Test unexpected adapter exceptions are recorded per file."""
        class FragileProvider(CodexProvider):
            def parse_bytes(self, data, path):
                if path.name == "rollout-b.jsonl":
                    raise TypeError("expected str, bytes or os.PathLike object, not int")
                return super().parse_bytes(data, path)

        write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        write_rollout(sessions_dir / "rollout-b.jsonl", 2)
        write_rollout(sessions_dir / "rollout-c.jsonl", 2)

        stats = ConversationIndexer(store, provider=FragileProvider()).incremental_sync(sessions_dir)

        assert (stats.processed, stats.failed) == (2, 1)
        path, message = stats.failures[0]
        assert path.endswith("rollout-b.jsonl")
        assert "malformed transcript" in message
        assert store.count_conversations() == 2

    def test_stored_size_matches_bytes_read(self, store, sessions_dir):
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        incremental_sync(sessions_dir, store)
        assert stored(store, path).fingerprint.size_bytes == len(path.read_bytes())
        assert with_hash(FileFingerprint(1, 999), b"abc").size_bytes == 3


class TestFullSync:
    """Tests for forced re-import."""

    def test_replaces_everything(self, store, embedder, sessions_dir):
        write_rollout(sessions_dir / "rollout-a.jsonl", 2)
        write_rollout(sessions_dir / "rollout-b.jsonl", 3)
        incremental_sync(sessions_dir, store, embedder)

        stats = full_sync(sessions_dir, store, embedder)

        assert (stats.replaced, stats.skipped, stats.turns_written) == (2, 0, 5)
        assert len(embedder.texts) == 10
        assert store.count_conversations() == 2
        assert store.count_turns() == 5

    def test_adapter_by_name(self, store, tmp_path):
        """Test the adapter can be given by format name."""
        project = tmp_path / "projects" / "-srv-app"
        project.mkdir(parents=True)
        (project / "abc.jsonl").write_text(
            '{"type": "user", "sessionId": "abc", "timestamp": "2025-01-01T00:00:00Z", '
            '"message": {"role": "user", "content": "hello there"}}\n'
        )
        stats = full_sync(tmp_path / "projects", store, adapter="claude-code")
        assert stats.imported == 1
        conv = store.get_conversations()[0]
        assert conv.format == "claude-code"
        assert conv.metadata["project"] == "app"

    def test_unknown_adapter(self, store, sessions_dir):
        with pytest.raises(ValueError, match="unknown transcript format"):
            full_sync(sessions_dir, store, adapter="nope")


class TestConversationIndexer:
    def test_defaults_to_codex(self, store):
        assert ConversationIndexer(store).provider is get_provider("codex")

    def test_sync_actions(self, store, sessions_dir):
        indexer = ConversationIndexer(store)
        path = write_rollout(sessions_dir / "rollout-a.jsonl", 1)
        stats = indexer.incremental_sync(sessions_dir)
        assert indexer._sync_file(path, force=False, stats=stats) is SyncAction.SKIP
        assert indexer._sync_file(path, force=True, stats=stats) is SyncAction.REPLACE
