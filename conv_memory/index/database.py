"""SQLite store for conversations, turns and turn embeddings."""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import ConsistencyError, StorageError, StorageOpenError
from ..models import Conversation, FileFingerprint, ToolInvocation, Turn, TurnTelemetry
from .embeddings import deserialize_embedding, serialize_embedding

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_DB_PATH = Path.home() / ".cache" / "conv-memory" / "conversations.db"
BUSY_TIMEOUT_SECONDS = 30.0
FETCH_BATCH_SIZE = 1024


@dataclass
class TurnFilter:
    """Constraints applied in SQL before any turn is scored."""

    conversation_ids: Optional[list[str]] = None
    meta_equals: list[tuple[str, Any]] = field(default_factory=list)
    embedding_dim: Optional[int] = None


def _to_epoch(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _json_path(key: str) -> str:
    return "$" + "".join(f'."{segment}"' for segment in key.split("."))


@contextmanager
def _sqlite_errors(action: str):
    try:
        yield
    except sqlite3.IntegrityError as e:
        raise ConsistencyError(f"{action}: {e}") from e
    except sqlite3.Error as e:
        raise StorageError(f"{action}: {e}") from e


class ConversationStore:
    """Transactional store of conversations and their turns.

    One instance may be shared between threads: each thread gets its own
    connection, writers serialize on ``BEGIN IMMEDIATE`` and readers see the
    last committed WAL snapshot.
    """

    def __init__(self, db_path: Optional[Path] = None):
        self._db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._initialized = False
        self._closed = False

    @property
    def path(self) -> Path:
        return self._db_path

    def __enter__(self) -> "ConversationStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get_connection(self) -> sqlite3.Connection:
        if self._closed:
            raise StorageError("store is closed")
        conn = getattr(self._local, "connection", None)
        if conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self._db_path),
                timeout=BUSY_TIMEOUT_SECONDS,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            self._local.connection = conn
            self._local.depth = 0
            with self._lock:
                self._connections.append(conn)
        return conn

    def initialize(self) -> None:
        """Open the database and create or verify its schema.

        Raises:
            StorageOpenError: if the file cannot be opened, is not a database,
                was written by a newer release, or the schema cannot be created.
        """
        with self._lock:
            if self._initialized:
                return
        try:
            conn = self._get_connection()
            current_version = self._get_schema_version(conn)
            if current_version > SCHEMA_VERSION:
                raise StorageOpenError(
                    f"{self._db_path} has schema version {current_version}, "
                    f"this release supports up to {SCHEMA_VERSION}"
                )
            if current_version < SCHEMA_VERSION:
                self._create_schema(conn)
        except (sqlite3.Error, OSError) as e:
            raise StorageOpenError(f"cannot open store {self._db_path}: {e}") from e
        with self._lock:
            self._initialized = True

    def _ensure_schema(self) -> None:
        if not self._initialized:
            self.initialize()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute(
                "SELECT MAX(version) as v FROM schema_meta"
            ).fetchone()
            return row["v"] if row and row["v"] else 0
        except sqlite3.OperationalError as e:
            if "no such table" in str(e):
                return 0
            raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        script = (
            "BEGIN IMMEDIATE;\n"
            + self._get_schema_sql()
            + self._get_fts_sql()
            + self._get_triggers_sql()
            + "INSERT OR IGNORE INTO schema_meta (version, description) "
            + f"VALUES ({SCHEMA_VERSION}, 'Schema version {SCHEMA_VERSION}');\n"
            + "COMMIT;"
        )
        try:
            conn.executescript(script)
        except sqlite3.Error:
            if conn.in_transaction:
                conn.rollback()
            raise
        logger.debug(f"Created schema version {SCHEMA_VERSION} in {self._db_path}")

    def _get_schema_sql(self) -> str:
        return """
            CREATE TABLE IF NOT EXISTS schema_meta (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER DEFAULT (strftime('%s', 'now')),
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                source_path TEXT NOT NULL UNIQUE,
                format TEXT NOT NULL,
                started_at REAL,
                ended_at REAL,
                duration_seconds REAL,
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                turn_count INTEGER NOT NULL DEFAULT 0,
                embedding_dim INTEGER NOT NULL DEFAULT 0,
                metadata_json TEXT NOT NULL DEFAULT '{}',
                preview TEXT,
                model TEXT,
                cwd TEXT,
                commands_json TEXT,
                files_json TEXT,
                questions_json TEXT,
                mtime_ns INTEGER,
                size_bytes INTEGER,
                content_hash TEXT,
                indexed_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_format ON conversations(format);
            CREATE INDEX IF NOT EXISTS idx_conversations_started_at ON conversations(started_at DESC);

            CREATE TABLE IF NOT EXISTS turns (
                conversation_id TEXT NOT NULL,
                turn_index INTEGER NOT NULL CHECK (turn_index >= 0),
                role TEXT NOT NULL,
                started_at REAL,
                ended_at REAL,
                user_text TEXT NOT NULL DEFAULT '',
                assistant_text TEXT NOT NULL DEFAULT '',
                fallback_text TEXT NOT NULL DEFAULT '',
                tools_json TEXT NOT NULL DEFAULT '[]',
                telemetry_json TEXT NOT NULL DEFAULT '{}',
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                embedding BLOB,
                embedding_dim INTEGER NOT NULL DEFAULT 0,
                turn_hash TEXT NOT NULL,
                PRIMARY KEY (conversation_id, turn_index),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_turns_embedding_dim ON turns(embedding_dim);
        """

    def _get_fts_sql(self) -> str:
        return """
            CREATE VIRTUAL TABLE IF NOT EXISTS turns_fts USING fts5(
                user_text,
                assistant_text,
                content='turns',
                content_rowid='rowid',
                tokenize='porter unicode61 remove_diacritics 1'
            );
        """

    def _get_triggers_sql(self) -> str:
        return """
            CREATE TRIGGER IF NOT EXISTS turns_ai AFTER INSERT ON turns BEGIN
                INSERT INTO turns_fts(rowid, user_text, assistant_text)
                VALUES (NEW.rowid, NEW.user_text, NEW.assistant_text);
            END;

            CREATE TRIGGER IF NOT EXISTS turns_ad AFTER DELETE ON turns BEGIN
                INSERT INTO turns_fts(turns_fts, rowid, user_text, assistant_text)
                VALUES ('delete', OLD.rowid, OLD.user_text, OLD.assistant_text);
            END;

            CREATE TRIGGER IF NOT EXISTS turns_au AFTER UPDATE ON turns BEGIN
                INSERT INTO turns_fts(turns_fts, rowid, user_text, assistant_text)
                VALUES ('delete', OLD.rowid, OLD.user_text, OLD.assistant_text);
                INSERT INTO turns_fts(rowid, user_text, assistant_text)
                VALUES (NEW.rowid, NEW.user_text, NEW.assistant_text);
            END;
        """

    def close(self) -> None:
        with self._lock:
            self._closed = True
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed calls in one write transaction.

        Nested uses on the same thread join the outermost transaction. Any
        exception rolls everything back.
        """
        self._ensure_schema()
        conn = self._get_connection()
        if self._local.depth:
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        with _sqlite_errors("begin transaction"):
            conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            self._local.depth = 0
            if conn.in_transaction:
                conn.rollback()
            raise
        self._local.depth = 0
        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(f"commit failed: {e}") from e

    # Writes

    def upsert_conversation(self, conversation: Conversation) -> None:
        """Insert or update a conversation row, then recompute its aggregates."""
        fingerprint = conversation.fingerprint or FileFingerprint(0, 0, None)
        indexed_at = conversation.indexed_at or int(time.time())
        with self.transaction() as conn, _sqlite_errors("upsert conversation"):
            conn.execute(
                """
                INSERT INTO conversations (
                    id, source_path, format, started_at, ended_at, duration_seconds,
                    prompt_tokens, completion_tokens, turn_count, embedding_dim,
                    metadata_json, preview, model, cwd, commands_json, files_json,
                    questions_json, mtime_ns, size_bytes, content_hash, indexed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    source_path = excluded.source_path,
                    format = excluded.format,
                    started_at = excluded.started_at,
                    ended_at = excluded.ended_at,
                    metadata_json = excluded.metadata_json,
                    preview = excluded.preview,
                    model = excluded.model,
                    cwd = excluded.cwd,
                    commands_json = excluded.commands_json,
                    files_json = excluded.files_json,
                    questions_json = excluded.questions_json,
                    mtime_ns = excluded.mtime_ns,
                    size_bytes = excluded.size_bytes,
                    content_hash = excluded.content_hash,
                    indexed_at = excluded.indexed_at
                """,
                (
                    conversation.id,
                    conversation.source_path,
                    conversation.format,
                    _to_epoch(conversation.started_at),
                    _to_epoch(conversation.ended_at),
                    conversation.duration_seconds,
                    conversation.prompt_tokens,
                    conversation.completion_tokens,
                    conversation.turn_count,
                    conversation.embedding_dim,
                    json.dumps(conversation.metadata, ensure_ascii=False, default=str),
                    conversation.preview,
                    conversation.model,
                    conversation.cwd,
                    json.dumps(conversation.commands),
                    json.dumps(conversation.files_touched),
                    json.dumps(conversation.questions, ensure_ascii=False),
                    fingerprint.mtime_ns,
                    fingerprint.size_bytes,
                    fingerprint.content_hash,
                    indexed_at,
                ),
            )
            self._refresh_aggregates(conn, conversation.id)

    def update_fingerprint(self, conversation_id: str, fingerprint: FileFingerprint) -> None:
        """Record a new mtime/size for unchanged content without touching turns."""
        with self.transaction() as conn, _sqlite_errors("update fingerprint"):
            cursor = conn.execute(
                """
                UPDATE conversations SET mtime_ns = ?, size_bytes = ?, content_hash = ?
                WHERE id = ?
                """,
                (fingerprint.mtime_ns, fingerprint.size_bytes, fingerprint.content_hash, conversation_id),
            )
            if cursor.rowcount == 0:
                raise ConsistencyError(f"unknown conversation {conversation_id}")

    def replace_turns(self, conversation_id: str, turns: list[Turn]) -> None:
        """Atomically replace every turn of a conversation."""
        self._check_contiguous(turns, start=0)
        with self.transaction() as conn, _sqlite_errors("replace turns"):
            self._require_conversation(conn, conversation_id)
            conn.execute("DELETE FROM turns WHERE conversation_id = ?", (conversation_id,))
            self._insert_turns(conn, conversation_id, turns)
            self._refresh_aggregates(conn, conversation_id)

    def append_turns(self, conversation_id: str, turns: list[Turn]) -> None:
        """Append turns whose indices continue the stored sequence.

        Raises:
            ConsistencyError: if the first new index is not ``max + 1`` or the
                batch has gaps.
        """
        if not turns:
            return
        with self.transaction() as conn, _sqlite_errors("append turns"):
            self._require_conversation(conn, conversation_id)
            row = conn.execute(
                "SELECT MAX(turn_index) AS m FROM turns WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            expected = 0 if row["m"] is None else row["m"] + 1
            self._check_contiguous(turns, start=expected)
            self._insert_turns(conn, conversation_id, turns)
            self._refresh_aggregates(conn, conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        with self.transaction() as conn, _sqlite_errors("delete conversation"):
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    @staticmethod
    def _check_contiguous(turns: list[Turn], start: int) -> None:
        for offset, turn in enumerate(turns):
            if turn.index != start + offset:
                raise ConsistencyError(
                    f"turn index {turn.index} where {start + offset} was expected"
                )

    def _require_conversation(self, conn: sqlite3.Connection, conversation_id: str) -> None:
        row = conn.execute(
            "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            raise ConsistencyError(f"unknown conversation {conversation_id}")

    def _insert_turns(self, conn: sqlite3.Connection, conversation_id: str, turns: list[Turn]) -> None:
        conn.executemany(
            """
            INSERT INTO turns (
                conversation_id, turn_index, role, started_at, ended_at,
                user_text, assistant_text, fallback_text, tools_json, telemetry_json,
                prompt_tokens, completion_tokens, embedding, embedding_dim, turn_hash
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    conversation_id,
                    t.index,
                    t.role,
                    _to_epoch(t.started_at),
                    _to_epoch(t.ended_at),
                    t.user_text,
                    t.assistant_text,
                    t.fallback_text,
                    json.dumps([tool.to_dict() for tool in t.tools], ensure_ascii=False, default=str),
                    json.dumps(t.telemetry.to_dict()),
                    t.telemetry.prompt_tokens,
                    t.telemetry.completion_tokens,
                    serialize_embedding(t.embedding) if t.embedding is not None else None,
                    t.embedding_dim,
                    t.turn_hash,
                )
                for t in turns
            ],
        )

    def _refresh_aggregates(self, conn: sqlite3.Connection, conversation_id: str) -> None:
        totals = conn.execute(
            """
            SELECT COUNT(*) AS n,
                   MIN(started_at) AS first_at,
                   MAX(COALESCE(ended_at, started_at)) AS last_at,
                   COALESCE(SUM(prompt_tokens), 0) AS prompt_tokens,
                   COALESCE(SUM(completion_tokens), 0) AS completion_tokens
            FROM turns WHERE conversation_id = ?
            """,
            (conversation_id,),
        ).fetchone()
        dims = [
            r["embedding_dim"]
            for r in conn.execute(
                """
                SELECT DISTINCT embedding_dim FROM turns
                WHERE conversation_id = ? AND embedding IS NOT NULL
                """,
                (conversation_id,),
            )
        ]
        if len(dims) > 1:
            raise ConsistencyError(
                f"conversation {conversation_id} would mix embedding dimensions {sorted(dims)}"
            )

        current = conn.execute(
            "SELECT started_at, ended_at FROM conversations WHERE id = ?",
            (conversation_id,),
        ).fetchone()
        starts = [v for v in (totals["first_at"], current["started_at"]) if v is not None]
        ends = [v for v in (totals["last_at"], current["ended_at"]) if v is not None]
        started_at = min(starts) if starts else None
        ended_at = max(ends) if ends else None
        duration = ended_at - started_at if started_at is not None and ended_at is not None else None

        conn.execute(
            """
            UPDATE conversations SET
                turn_count = ?, started_at = ?, ended_at = ?, duration_seconds = ?,
                prompt_tokens = ?, completion_tokens = ?, embedding_dim = ?
            WHERE id = ?
            """,
            (
                totals["n"],
                started_at,
                ended_at,
                duration,
                totals["prompt_tokens"],
                totals["completion_tokens"],
                dims[0] if dims else 0,
                conversation_id,
            ),
        )

    # Reads

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self._ensure_schema()
        with _sqlite_errors("get conversation"):
            row = self._get_connection().execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_conversation(row)

    def get_conversation_by_path(self, source_path: str) -> Optional[Conversation]:
        self._ensure_schema()
        with _sqlite_errors("get conversation"):
            row = self._get_connection().execute(
                "SELECT * FROM conversations WHERE source_path = ?", (source_path,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_conversation(row)

    def get_fingerprint(self, source_path: str) -> Optional[FileFingerprint]:
        """Stored fingerprint for a path; reads inside an open transaction see its writes."""
        self._ensure_schema()
        with _sqlite_errors("get fingerprint"):
            row = self._get_connection().execute(
                "SELECT mtime_ns, size_bytes, content_hash FROM conversations WHERE source_path = ?",
                (source_path,),
            ).fetchone()
        if not row:
            return None
        return FileFingerprint(
            mtime_ns=row["mtime_ns"] or 0,
            size_bytes=row["size_bytes"] or 0,
            content_hash=row["content_hash"],
        )

    def get_conversations(self, *, source_format: Optional[str] = None, limit: int = 100) -> list[Conversation]:
        self._ensure_schema()
        conditions = ""
        params: list = []
        if source_format:
            conditions = "WHERE format = ?"
            params.append(source_format)
        params.append(limit)
        with _sqlite_errors("list conversations"):
            rows = self._get_connection().execute(
                f"""
                SELECT * FROM conversations {conditions}
                ORDER BY started_at DESC, id
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [self._row_to_conversation(r) for r in rows]

    def get_turn_hashes(self, conversation_id: str) -> list[str]:
        self._ensure_schema()
        with _sqlite_errors("get turn hashes"):
            rows = self._get_connection().execute(
                "SELECT turn_hash FROM turns WHERE conversation_id = ? ORDER BY turn_index",
                (conversation_id,),
            ).fetchall()
        return [r["turn_hash"] for r in rows]

    def iter_turns(self, turn_filter: Optional[TurnFilter] = None) -> Iterator[Turn]:
        """Yield turns matching the filter in ``(conversation_id, index)`` order.

        Rows are read in one statement, so the result is a single committed
        snapshot even while another thread writes.
        """
        self._ensure_schema()
        where, params = self._filter_clause(turn_filter or TurnFilter())
        with _sqlite_errors("read turns"):
            rows = self._get_connection().execute(
                f"""
                SELECT t.* FROM turns t
                JOIN conversations c ON c.id = t.conversation_id
                {where}
                ORDER BY t.conversation_id, t.turn_index
                """,
                params,
            ).fetchall()
        for row in rows:
            yield self._row_to_turn(row)

    def get_turn(self, conversation_id: str, turn_index: int) -> Optional[Turn]:
        self._ensure_schema()
        with _sqlite_errors("get turn"):
            row = self._get_connection().execute(
                "SELECT * FROM turns WHERE conversation_id = ? AND turn_index = ?",
                (conversation_id, turn_index),
            ).fetchone()
        return self._row_to_turn(row) if row else None

    def iter_embedding_candidates(
        self,
        turn_filter: TurnFilter,
        batch_size: int = FETCH_BATCH_SIZE,
    ) -> Iterator[list[sqlite3.Row]]:
        """Yield batches of (conversation_id, turn_index, embedding, texts) rows.

        Only turns embedded with ``turn_filter.embedding_dim`` dimensions are
        returned.
        """
        self._ensure_schema()
        where, params = self._filter_clause(turn_filter)
        with _sqlite_errors("read embeddings"):
            cursor = self._get_connection().execute(
                f"""
                SELECT t.conversation_id, t.turn_index, t.embedding,
                       t.user_text, t.assistant_text
                FROM turns t
                JOIN conversations c ON c.id = t.conversation_id
                {where}
                """,
                params,
            )
            try:
                while True:
                    rows = cursor.fetchmany(batch_size)
                    if not rows:
                        break
                    yield rows
            finally:
                cursor.close()

    def search_turns_fts(
        self,
        query: str,
        turn_filter: Optional[TurnFilter] = None,
        limit: int = 10,
    ) -> list[sqlite3.Row]:
        """Keyword search via FTS5. Lower bm25 scores are more relevant."""
        self._ensure_schema()
        terms = [t.replace('"', '""') for t in query.split()]
        if not terms:
            return []
        match = " ".join(f'"{t}"' for t in terms)
        where, params = self._filter_clause(turn_filter or TurnFilter())
        where = f"{where} AND turns_fts MATCH ?" if where else "WHERE turns_fts MATCH ?"
        with _sqlite_errors("keyword search"):
            return self._get_connection().execute(
                f"""
                SELECT t.conversation_id, t.turn_index, t.user_text, t.assistant_text,
                       bm25(turns_fts) AS score
                FROM turns_fts
                JOIN turns t ON t.rowid = turns_fts.rowid
                JOIN conversations c ON c.id = t.conversation_id
                {where}
                ORDER BY score, t.conversation_id, t.turn_index
                LIMIT ?
                """,
                [*params, match, limit],
            ).fetchall()

    def _filter_clause(self, turn_filter: TurnFilter) -> tuple[str, list]:
        conditions = []
        params: list = []

        if turn_filter.conversation_ids is not None:
            if turn_filter.conversation_ids:
                placeholders = ", ".join("?" for _ in turn_filter.conversation_ids)
                conditions.append(f"t.conversation_id IN ({placeholders})")
                params.extend(turn_filter.conversation_ids)
            else:
                conditions.append("0")

        for key, value in turn_filter.meta_equals:
            if value is None:
                conditions.append("json_extract(c.metadata_json, ?) IS NULL")
                params.append(_json_path(key))
            else:
                conditions.append("json_extract(c.metadata_json, ?) = ?")
                params.extend([_json_path(key), int(value) if isinstance(value, bool) else value])

        if turn_filter.embedding_dim is not None:
            conditions.append("t.embedding IS NOT NULL AND t.embedding_dim = ?")
            params.append(turn_filter.embedding_dim)

        if not conditions:
            return "", params
        return "WHERE " + " AND ".join(conditions), params

    # Counters

    def count_conversations(self, *, source_format: Optional[str] = None) -> int:
        self._ensure_schema()
        with _sqlite_errors("count conversations"):
            if source_format:
                row = self._get_connection().execute(
                    "SELECT COUNT(*) FROM conversations WHERE format = ?", (source_format,)
                ).fetchone()
            else:
                row = self._get_connection().execute("SELECT COUNT(*) FROM conversations").fetchone()
        return row[0]

    def count_turns(self, *, embedded_only: bool = False) -> int:
        self._ensure_schema()
        sql = "SELECT COUNT(*) FROM turns"
        if embedded_only:
            sql += " WHERE embedding IS NOT NULL"
        with _sqlite_errors("count turns"):
            return self._get_connection().execute(sql).fetchone()[0]

    def get_stats(self) -> dict:
        self._ensure_schema()
        with _sqlite_errors("read stats"):
            conn = self._get_connection()
            by_format = {
                r["format"]: r["n"]
                for r in conn.execute(
                    "SELECT format, COUNT(*) AS n FROM conversations GROUP BY format ORDER BY format"
                )
            }
            dims = {
                r["embedding_dim"]: r["n"]
                for r in conn.execute(
                    """
                    SELECT embedding_dim, COUNT(*) AS n FROM turns
                    WHERE embedding IS NOT NULL GROUP BY embedding_dim
                    """
                )
            }
            tokens = conn.execute(
                """
                SELECT COALESCE(SUM(prompt_tokens), 0) AS p, COALESCE(SUM(completion_tokens), 0) AS c
                FROM conversations
                """
            ).fetchone()
        return {
            "conversations": sum(by_format.values()),
            "turns": self.count_turns(),
            "embedded_turns": self.count_turns(embedded_only=True),
            "by_format": by_format,
            "embedding_dims": dims,
            "prompt_tokens": tokens["p"],
            "completion_tokens": tokens["c"],
        }

    # Row conversion

    def _row_to_conversation(self, row: sqlite3.Row) -> Conversation:
        fingerprint = None
        if row["mtime_ns"] is not None and row["size_bytes"] is not None:
            fingerprint = FileFingerprint(
                mtime_ns=row["mtime_ns"],
                size_bytes=row["size_bytes"],
                content_hash=row["content_hash"],
            )
        return Conversation(
            id=row["id"],
            source_path=row["source_path"],
            format=row["format"],
            started_at=_from_epoch(row["started_at"]),
            ended_at=_from_epoch(row["ended_at"]),
            duration_seconds=row["duration_seconds"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            turn_count=row["turn_count"],
            embedding_dim=row["embedding_dim"],
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            preview=row["preview"] or "",
            model=row["model"],
            cwd=row["cwd"],
            commands=json.loads(row["commands_json"]) if row["commands_json"] else [],
            files_touched=json.loads(row["files_json"]) if row["files_json"] else [],
            questions=json.loads(row["questions_json"]) if row["questions_json"] else [],
            fingerprint=fingerprint,
            indexed_at=row["indexed_at"],
        )

    def _row_to_turn(self, row: sqlite3.Row) -> Turn:
        return Turn(
            index=row["turn_index"],
            role=row["role"],
            user_text=row["user_text"],
            assistant_text=row["assistant_text"],
            fallback_text=row["fallback_text"],
            tools=[ToolInvocation.from_dict(t) for t in json.loads(row["tools_json"] or "[]")],
            telemetry=TurnTelemetry.from_dict(json.loads(row["telemetry_json"] or "{}")),
            started_at=_from_epoch(row["started_at"]),
            ended_at=_from_epoch(row["ended_at"]),
            embedding=deserialize_embedding(row["embedding"]) if row["embedding"] is not None else None,
            turn_hash=row["turn_hash"],
            conversation_id=row["conversation_id"],
        )


def open_store(path: Optional[Path] = None) -> ConversationStore:
    """Open (creating if needed) the store at ``path``.

    Raises:
        StorageOpenError: if the store cannot be opened or migrated.
    """
    store = ConversationStore(path)
    try:
        store.initialize()
    except StorageOpenError:
        store.close()
        raise
    return store
