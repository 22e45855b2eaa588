from __future__ import annotations

from typing import Dict, Iterable, Optional

import numpy as np


def _unit(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    return v if n == 0.0 else v / n


class DenseIndex:
    """
    Exact cosine search over unit-normalized vectors.
    Search : O(CD) for C candidates of dimension D
    Space  : O(ND)
    Not thread-safe on its own; DualIndex serializes writes.
    """

    def __init__(self, dim: Optional[int] = None) -> None:
        self.dim = dim
        self._vecs: Dict[str, np.ndarray] = {}

    def __len__(self) -> int:
        return len(self._vecs)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vecs

    def add(self, chunk_id: str, vector: np.ndarray) -> None:
        v = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self.dim is None:
            self.dim = int(v.shape[0])
        elif v.shape[0] != self.dim:
            raise ValueError(f"vector dim {v.shape[0]} != index dim {self.dim}")
        self._vecs[chunk_id] = _unit(v)

    def remove(self, chunk_id: str) -> bool:
        return self._vecs.pop(chunk_id, None) is not None

    def scores(self, query: np.ndarray, candidates: Iterable[str]) -> Dict[str, float]:
        """Cosine similarity for every candidate that has a vector."""
        ids = [cid for cid in candidates if cid in self._vecs]
        if not ids:
            return {}
        q = np.asarray(query, dtype=np.float32).reshape(-1)
        if q.shape[0] != self.dim:
            raise ValueError(f"query dim {q.shape[0]} != index dim {self.dim}")
        q = _unit(q)
        M = np.vstack([self._vecs[cid] for cid in ids])
        sims = M @ q
        return {cid: float(s) for cid, s in zip(ids, sims.tolist())}
