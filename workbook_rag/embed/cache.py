from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import EmbeddingProviderError


class EmbeddingCache:
    """
    content_hash -> embedding, fixed dimension per instance.

    Append-mostly and safe to read concurrently. `put` is idempotent: when two
    workers race on the same hash the first vector wins and the second is
    discarded, so readers never observe a replaced vector.
    """

    def __init__(self, dim: Optional[int] = None) -> None:
        self._dim = dim
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    @property
    def dim(self) -> Optional[int]:
        return self._dim

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._vectors

    def get(self, content_hash: str) -> Optional[np.ndarray]:
        return self._vectors.get(content_hash)

    def keys(self) -> List[str]:
        return sorted(self._vectors)

    def put(self, content_hash: str, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        arr = np.array(vector, dtype=np.float32).reshape(-1)
        if arr.size == 0 or not np.all(np.isfinite(arr)):
            raise EmbeddingProviderError(f"unusable embedding for {content_hash[:12]}")
        with self._lock:
            existing = self._vectors.get(content_hash)
            if existing is not None:
                return existing
            if self._dim is None:
                self._dim = int(arr.shape[0])
            elif arr.shape[0] != self._dim:
                raise EmbeddingProviderError(
                    f"embedding dim {arr.shape[0]} != index dim {self._dim}"
                )
            arr.setflags(write=False)
            self._vectors[content_hash] = arr
            return arr

    def check_dim(self, vector: np.ndarray) -> None:
        if self._dim is not None and vector.shape[-1] != self._dim:
            raise EmbeddingProviderError(f"embedding dim {vector.shape[-1]} != index dim {self._dim}")

    # ---------- persistence ----------
    def export(self) -> Tuple[List[str], np.ndarray]:
        keys = self.keys()
        if not keys:
            return [], np.zeros((0, self._dim or 0), dtype=np.float32)
        return keys, np.vstack([self._vectors[k] for k in keys]).astype(np.float32)

    @classmethod
    def from_arrays(cls, keys: Iterable[str], matrix: np.ndarray, dim: Optional[int] = None) -> "EmbeddingCache":
        keys = list(keys)
        if matrix.ndim != 2 or matrix.shape[0] != len(keys):
            raise ValueError(f"embedding matrix shape {matrix.shape} does not match {len(keys)} keys")
        cache = cls(dim=dim if dim is not None else (int(matrix.shape[1]) if keys else None))
        for k, row in zip(keys, matrix):
            cache.put(k, row)
        return cache
