"""Exception types shared by ingest, indexing and retrieval."""


class SeferError(Exception):
    """Base class for all library errors."""


class IngestError(SeferError):
    """A source payload was malformed or produced no usable text."""


class EmbeddingProviderError(SeferError):
    """The embedding provider failed, timed out or kept throttling past the retry limit."""


class RetrievalError(SeferError):
    """Every retrieval stream for a query failed."""

    def __init__(self, message: str, failures: dict[str, Exception] | None = None):
        super().__init__(message)
        self.failures = failures or {}


class IndexBuildError(SeferError):
    """A master index rebuild did not complete; the previous index is still in place."""
