"""Data model for conversations, turns and sync results."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class ToolInvocation:
    """A tool call made during a turn, with its output when one was recorded."""

    kind: str  # "function_call", "custom_tool", "shell", "web_search", "tool_use"
    name: str = ""
    call_id: Optional[str] = None
    arguments: Any = None
    output: Optional[str] = None
    status: Optional[str] = None
    success: Optional[bool] = None
    events: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ToolInvocation":
        return cls(
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            call_id=data.get("call_id"),
            arguments=data.get("arguments"),
            output=data.get("output"),
            status=data.get("status"),
            success=data.get("success"),
            events=list(data.get("events") or []),
        )


@dataclass
class TurnTelemetry:
    latency_ms: Optional[int] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    tokens_estimated: bool = False
    model: Optional[str] = None
    plan_updates: int = 0
    approvals: int = 0
    reasoning_encrypted: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TurnTelemetry":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Turn:
    """One exchange within a conversation."""

    index: int
    role: str  # "exchange", "assistant", "tool", "compacted", "event"
    user_text: str = ""
    assistant_text: str = ""
    fallback_text: str = ""
    tools: list[ToolInvocation] = field(default_factory=list)
    telemetry: TurnTelemetry = field(default_factory=TurnTelemetry)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    embedding: Optional[list[float]] = None
    turn_hash: str = ""
    conversation_id: str = ""

    @property
    def embedding_dim(self) -> int:
        return len(self.embedding) if self.embedding is not None else 0


@dataclass(frozen=True)
class FileFingerprint:
    """Identity of a source file at one point in time."""

    mtime_ns: int
    size_bytes: int
    content_hash: Optional[str] = None

    def stat_matches(self, other: "FileFingerprint") -> bool:
        return self.mtime_ns == other.mtime_ns and self.size_bytes == other.size_bytes


@dataclass
class Conversation:
    """One source transcript and its aggregates."""

    id: str
    source_path: str
    format: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    turn_count: int = 0
    embedding_dim: int = 0
    metadata: dict = field(default_factory=dict)

    # Derived from the turns at import time
    preview: str = ""
    model: Optional[str] = None
    cwd: Optional[str] = None
    commands: list[str] = field(default_factory=list)
    files_touched: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)

    fingerprint: Optional[FileFingerprint] = None
    indexed_at: Optional[int] = None


@dataclass
class Hit:
    conversation_id: str
    turn_index: int
    score: float
    user_text: str = ""
    assistant_text: str = ""


@dataclass
class SyncStats:
    """Outcome counters for one sync run."""

    processed: int = 0
    skipped: int = 0
    failed: int = 0
    imported: int = 0
    appended: int = 0
    replaced: int = 0
    turns_written: int = 0
    time_ms: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.failed


# Adapter output, before normalization


@dataclass
class RawTurn:
    """A turn as an adapter saw it in the transcript."""

    user_inputs: list[str] = field(default_factory=list)
    image_count: int = 0
    assistant_messages: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    reasoning_encrypted: bool = False
    tool_output_text: Optional[str] = None
    event_text: Optional[str] = None
    tools: list[ToolInvocation] = field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    token_usage: Optional[dict] = None
    model: Optional[str] = None
    context: dict = field(default_factory=dict)
    plan_updates: int = 0
    approvals: int = 0
    compacted: bool = False

    def observe(self, timestamp: Optional[datetime]) -> None:
        if timestamp is None:
            return
        if self.started_at is None or timestamp < self.started_at:
            self.started_at = timestamp
        if self.ended_at is None or timestamp > self.ended_at:
            self.ended_at = timestamp

    def is_empty(self) -> bool:
        return not (
            self.user_inputs
            or self.image_count
            or self.assistant_messages
            or self.reasoning
            or self.reasoning_encrypted
            or self.tools
            or self.token_usage
            or self.tool_output_text
            or self.event_text
        )


@dataclass
class ParsedSession:
    """Everything an adapter extracted from one transcript file."""

    format: str
    session_meta: dict = field(default_factory=dict)
    turns: list[RawTurn] = field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    total_token_usage: Optional[dict] = None
    model_context_window: Optional[int] = None
