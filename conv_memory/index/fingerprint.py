"""Source file fingerprints and path-derived conversation identity."""

import hashlib
import uuid
from pathlib import Path

from ..errors import SourceError
from ..models import FileFingerprint

# Fixed namespace so ids are stable across machines and releases
CONVERSATION_NAMESPACE = uuid.UUID("6f1c8a52-3d4e-5b7a-9c0d-2e8f4a6b1c3d")


def source_key(path: Path) -> str:
    """Canonical string form of a source path, used as its identity."""
    return str(Path(path).expanduser().resolve())


def conversation_id_for_path(path: Path) -> str:
    return str(uuid.uuid5(CONVERSATION_NAMESPACE, source_key(path)))


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def stat_fingerprint(path: Path) -> FileFingerprint:
    """Fingerprint from ``stat`` only; the content hash is filled in later."""
    try:
        st = path.stat()
    except OSError as e:
        raise SourceError(f"cannot stat file: {e}", path=str(path)) from e
    return FileFingerprint(mtime_ns=st.st_mtime_ns, size_bytes=st.st_size)


def with_hash(fingerprint: FileFingerprint, data: bytes) -> FileFingerprint:
    """Fingerprint of the bytes actually read; the size follows ``data``, not ``stat``."""
    return FileFingerprint(
        mtime_ns=fingerprint.mtime_ns,
        size_bytes=len(data),
        content_hash=hash_bytes(data),
    )
