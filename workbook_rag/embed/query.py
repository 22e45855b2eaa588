from __future__ import annotations

from typing import Callable, Optional

import numpy as np

from ..concurrency import BoundedExecutor, CancelToken, wait_future
from ..errors import EmbeddingProviderError, RetrievalTimeout
from .providers import EmbeddingProvider


class QueryEmbedder:
    """
    Embeds query text on the query pool. Query vectors are never written to
    the embedding cache.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        pool: BoundedExecutor,
        dim: Callable[[], Optional[int]] = lambda: None,
    ) -> None:
        self.provider = provider
        self.pool = pool
        self._dim = dim

    def _embed_one(self, text: str) -> np.ndarray:
        raw = self.provider.embed([text])
        vecs = np.asarray(raw, dtype=np.float32)
        if vecs.ndim != 2 or vecs.shape[0] != 1:
            raise EmbeddingProviderError(f"provider returned shape {vecs.shape} for one query")
        return vecs[0]

    def embed(self, text: str, cancel: Optional[CancelToken] = None) -> np.ndarray:
        """Raises RetrievalTimeout, PoolSaturated or EmbeddingProviderError."""
        fut = self.pool.submit(self._embed_one, text)
        try:
            vec = wait_future(fut, cancel)
        except (EmbeddingProviderError, RetrievalTimeout):
            raise
        except Exception as exc:
            raise EmbeddingProviderError(f"query embedding failed: {exc}") from exc
        dim = self._dim()
        if dim is not None and vec.shape[0] != dim:
            raise EmbeddingProviderError(f"query embedding dim {vec.shape[0]} != index dim {dim}")
        return vec
