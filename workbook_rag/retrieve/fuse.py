from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

import numpy as np

from ..errors import InvalidWeights
from ..index.schema import ChunkLevel


@dataclass(frozen=True)
class FusedScore:
    chunk_id: str
    level: ChunkLevel
    fused: float
    vector: float = 0.0     # normalized component, 0 when absent
    keyword: float = 0.0

    def sort_key(self):
        # fused desc, shallower level first, then id
        return (-self.fused, int(self.level), self.chunk_id)


def validate_weights(vector_weight: float, keyword_weight: float) -> None:
    for name, w in (("vector_weight", vector_weight), ("keyword_weight", keyword_weight)):
        if isinstance(w, bool) or not isinstance(w, (int, float)):
            raise InvalidWeights(f"{name} must be a number, got {w!r}")
        if not math.isfinite(w) or w < 0:
            raise InvalidWeights(f"{name} must be finite and non-negative, got {w!r}")
    if vector_weight + keyword_weight <= 0:
        raise InvalidWeights("vector_weight + keyword_weight must be positive")


def normalize(
    scores: Mapping[str, float],
    method: str = "minmax",
    domain: Optional[Iterable[str]] = None,
) -> Dict[str, float]:
    """
    Normalize one score list. Statistics are taken over `domain` (the
    candidate set) when given, with candidates missing from `scores` counted
    as 0.0, otherwise over the hits alone. Only hits are returned.

    minmax : (s - min) / (max - min); a flat list maps to 1.0 when positive, else 0.0
    zscore : logistic of the z-score, so values stay in (0, 1)
    none   : raw scores
    """
    if not scores:
        return {}
    ids = list(scores)
    vals = np.array([scores[i] for i in ids], dtype=np.float64)
    extra = [] if domain is None else [i for i in domain if i not in scores]
    stats = np.concatenate([vals, np.zeros(len(extra))]) if extra else vals
    if method == "none":
        out = vals
    elif method == "minmax":
        lo, hi = float(stats.min()), float(stats.max())
        if hi - lo <= 1e-12:
            out = np.full_like(vals, 1.0 if hi > 0 else 0.0)
        else:
            out = (vals - lo) / (hi - lo)
    elif method == "zscore":
        std = float(stats.std())
        z = np.zeros_like(vals) if std <= 1e-12 else (vals - stats.mean()) / std
        out = 1.0 / (1.0 + np.exp(-z))
    else:
        raise ValueError(f"unknown normalization {method!r}")
    return {i: float(v) for i, v in zip(ids, out.tolist())}


def fuse(
    vector_norm: Mapping[str, float],
    keyword_norm: Mapping[str, float],
    levels: Mapping[str, ChunkLevel],
    vector_weight: float,
    keyword_weight: float,
) -> List[FusedScore]:
    """Weighted sum over the union of hits; returned in ranking order."""
    out = []
    for cid in set(vector_norm) | set(keyword_norm):
        nv = vector_norm.get(cid, 0.0)
        nk = keyword_norm.get(cid, 0.0)
        out.append(
            FusedScore(
                chunk_id=cid,
                level=levels[cid],
                fused=vector_weight * nv + keyword_weight * nk,
                vector=nv,
                keyword=nk,
            )
        )
    return rank(out)


def rank(items: List[FusedScore], limit: Optional[int] = None) -> List[FusedScore]:
    ordered = sorted(items, key=FusedScore.sort_key)
    return ordered if limit is None else ordered[:limit]
