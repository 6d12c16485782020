"""Base class for transcript format adapters."""

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import SourceError
from ..models import ParsedSession

logger = logging.getLogger(__name__)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) or epoch number into UTC."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds are common in agent logs
        seconds = value / 1000 if value > 10_000_000_000 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_count(value) -> int:
    """Non-negative integer from a usage field; anything unusable counts as 0."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value > 0 else 0
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


class TranscriptProvider(ABC):
    """Abstract base class for transcript format adapters.

    Each agent tool (Codex, Claude Code, ...) implements this interface to
    discover its transcript files under a root and parse one file into a
    ParsedSession. Sync, storage and search never look at the raw format.
    """

    # Provider identity
    name: str = ""  # unique identifier: "codex", "claude-code"
    display_name: str = ""

    # Glob matched recursively under the source root
    file_pattern: str = "*.jsonl"

    def discover_files(self, root: Path) -> list[Path]:
        """Discover transcript files under ``root``, sorted by path.

        A root that is itself a file is returned as the only candidate.
        """
        if root.is_file():
            return [root]
        if not root.is_dir():
            return []
        return sorted(p for p in root.rglob(self.file_pattern) if p.is_file())

    def read_bytes(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise SourceError(f"cannot read file: {e}", path=str(path)) from e

    def parse_file(self, path: Path) -> ParsedSession:
        return self.parse_bytes(self.read_bytes(path), path)

    @abstractmethod
    def parse_bytes(self, data: bytes, path: Path) -> ParsedSession:
        """Parse the raw bytes of one transcript file.

        Raises ParseError for malformed input.
        """
        ...

    @staticmethod
    def decode(data: bytes, path: Path) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SourceError(f"not valid UTF-8: {e}", path=str(path)) from e
