"""Shared fixtures: rollout writers, a deterministic embedder, an open store."""

import hashlib
import json
import struct
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from conv_memory.index.database import open_store
from conv_memory.index.embeddings import Embedder

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _ts(seconds: int) -> str:
    return (BASE_TIME + timedelta(seconds=seconds)).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def rollout_records(
    n_turns: int,
    session_id: str = "sess-1",
    cwd: str = "/work/alpha",
    topic: str = "bug",
) -> list[dict]:
    """Codex rollout records with ``n_turns`` user/assistant exchanges."""
    records = [
        {
            "timestamp": _ts(0),
            "type": "session_meta",
            "payload": {"id": session_id, "cwd": cwd, "originator": "codex_cli_rs", "cli_version": "0.40.0"},
        }
    ]
    for i in range(n_turns):
        base = i * 10
        records.extend([
            {
                "timestamp": _ts(base + 1),
                "type": "turn_context",
                "payload": {
                    "cwd": cwd,
                    "model": "gpt-5-codex",
                    "approval_policy": "on-request",
                    "sandbox_policy": {"mode": "workspace-write", "network_access": False},
                },
            },
            {
                "timestamp": _ts(base + 2),
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "user",
                    "content": [{"type": "input_text", "text": f"How do I fix {topic} number {i}?"}],
                },
            },
            {
                "timestamp": _ts(base + 3),
                "type": "response_item",
                "payload": {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": f"Patch the {topic} handler, step {i}."}],
                },
            },
            {
                "timestamp": _ts(base + 4),
                "type": "event_msg",
                "payload": {
                    "type": "token_count",
                    "info": {
                        "last_token_usage": {"input_tokens": 100 + i, "output_tokens": 20 + i},
                        "total_token_usage": {"input_tokens": 100 * (i + 1), "output_tokens": 20 * (i + 1)},
                    },
                },
            },
        ])
    return records


def write_records(path: Path, records: list[dict]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(json.dumps(r) + "\n" for r in records))
    return path


def write_rollout(path: Path, n_turns: int, **kwargs) -> Path:
    return write_records(path, rollout_records(n_turns, **kwargs))


class FakeEmbedder(Embedder):
    """Deterministic hash-based embedder; records how many texts it embedded."""

    name = "fake"

    def __init__(self, dim: int = 8):
        self.dim = dim
        self.calls = 0
        self.texts: list[str] = []

    @property
    def dimension(self):
        return self.dim

    def vector_for(self, text: str) -> list[float]:
        digest = b""
        counter = 0
        while len(digest) < self.dim:
            digest += hashlib.sha256(f"{counter}:{text}".encode()).digest()
            counter += 1
        values = [(b / 255.0) * 2 - 1 for b in digest[: self.dim]]
        # Round-trip through float32 so stored and query vectors agree exactly
        return list(struct.unpack(f"<{self.dim}f", struct.pack(f"<{self.dim}f", *values)))

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        self.texts.extend(texts)
        return [self.vector_for(t) for t in texts]


@pytest.fixture
def store(tmp_path):
    store = open_store(tmp_path / "memory.db")
    yield store
    store.close()


@pytest.fixture
def embedder():
    return FakeEmbedder(dim=8)


@pytest.fixture
def sessions_dir(tmp_path):
    path = tmp_path / "sessions"
    path.mkdir()
    return path
