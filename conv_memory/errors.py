"""Exception hierarchy shared by the sync, storage and search layers."""

from typing import Optional


class ConvMemoryError(Exception):
    """Base class for every error raised by conv-memory."""


class SourceError(ConvMemoryError):
    """A transcript could not be read or produced no usable turns.

    Recorded per file during a sync run; never aborts the run.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class ParseError(SourceError):
    """A transcript line is malformed."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        line_number: Optional[int] = None,
    ):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message, path=path)


class ConsistencyError(ConvMemoryError):
    """A write would break ordering, dimension or concurrency guarantees.

    The surrounding transaction is rolled back.
    """


class StorageError(ConvMemoryError):
    """The underlying SQLite store failed. Fatal to a sync run."""


class StorageOpenError(StorageError):
    """The store could not be opened, created or migrated."""


class SearchConfigError(ConvMemoryError):
    """Search parameters are invalid (top_k, filters, query)."""


class EmbeddingError(ConvMemoryError):
    """The embedding provider could not load or failed during inference."""
