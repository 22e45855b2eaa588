from __future__ import annotations

from typing import Optional


class WorkbookRagError(Exception):
    """Base class for every error raised by the index and query pipelines."""


class StructuralError(WorkbookRagError):
    """A hierarchy invariant would be violated (ordinals, parents, section hints).

    Fatal to the ingestion that raised it; nothing is written to the index.
    """


class EmbeddingProviderError(WorkbookRagError):
    """The embedding provider failed, timed out or returned malformed vectors."""


class InvalidQueryError(WorkbookRagError):
    """A query was rejected before any part of it executed."""


class InvalidWeights(InvalidQueryError):
    pass


class InvalidFilter(InvalidQueryError):
    pass


class IntegrityError(WorkbookRagError):
    """Orphan chunk or missing ancestor. The index should be rebuilt."""

    rebuild_recommended = True

    def __init__(self, message: str, chunk_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.chunk_id = chunk_id


class RetrievalTimeout(WorkbookRagError):
    """A cancellation token expired or was cancelled."""


class PoolSaturated(WorkbookRagError):
    """A bounded worker pool or queue is full and the caller chose not to block."""
