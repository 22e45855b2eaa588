from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from ..concurrency import BoundedExecutor, CancelToken, wait_future
from ..config import RerankerSettings
from ..errors import PoolSaturated, RetrievalTimeout
from ..index.schema import RetrievedChunk

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

# the only skip reason that marks a result partial; failures stay log-only
RERANK_TIMED_OUT = "rerank timed out"


@runtime_checkable
class RerankScorer(Protocol):
    """`score` is required; scorers that can batch also expose `score_many`."""

    enabled: bool

    def score(self, query: str, text: str) -> float:
        ...


def _score_all(scorer: RerankScorer, query: str, texts: Sequence[str]) -> List[float]:
    batch = getattr(scorer, "score_many", None)
    if batch is not None:
        return [float(s) for s in batch(query, texts)]
    return [float(scorer.score(query, t)) for t in texts]


class CrossEncoderScorer:
    """
    Cross-encoder scorer (CPU-friendly). If torch / sentence-transformers is
    unavailable, this class disables itself and the rerank stage is skipped.
    """
    def __init__(self, model_name: str = "BAAI/bge-reranker-base"):
        self.model_name = model_name
        self._model = None
        self.enabled = False
        try:
            from sentence_transformers import CrossEncoder  # type: ignore
            self._CrossEncoder = CrossEncoder
            self.enabled = True
        except Exception:
            logger.info("sentence-transformers not available; cross-encoder reranking disabled")
            self._CrossEncoder = None
            self.enabled = False

    def _ensure_model(self):
        if self._model is None:
            self._model = self._CrossEncoder(self.model_name)
        return self._model

    def score(self, query: str, text: str) -> float:
        return self.score_many(query, [text])[0]

    def score_many(self, query: str, texts: Sequence[str]) -> List[float]:
        model = self._ensure_model()
        scores = model.predict([(query, t) for t in texts])  # higher is better
        return [float(s) for s in scores]


class OverlapScorer:
    """Fraction of query tokens present in the text. Offline stand-in for a cross-encoder."""

    enabled = True

    def score(self, query: str, text: str) -> float:
        return self.score_many(query, [text])[0]

    def score_many(self, query: str, texts: Sequence[str]) -> List[float]:
        q = set(_TOKEN_RE.findall(query.lower()))
        if not q:
            return [0.0 for _ in texts]
        out = []
        for t in texts:
            toks = set(_TOKEN_RE.findall((t or "").lower()))
            out.append(len(q & toks) / len(q))
        return out


def make_scorer(settings: RerankerSettings) -> RerankScorer:
    if settings.backend == "overlap":
        return OverlapScorer()
    return CrossEncoderScorer(settings.model)


class Reranker:
    """
    Re-sorts the planner's top-N by scorer output and truncates to top_k.
    Any failure leaves the fused order untouched; reranking is never required
    for a query to succeed.
    """

    def __init__(self, scorer: Optional[RerankScorer], pool: BoundedExecutor, timeout_s: float = 30.0):
        self.scorer = scorer
        self.pool = pool
        self.timeout_s = timeout_s

    @property
    def available(self) -> bool:
        return self.scorer is not None and bool(getattr(self.scorer, "enabled", True))

    def rerank(
        self,
        query: str,
        items: List[RetrievedChunk],
        top_k: int,
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[List[RetrievedChunk], Optional[str]]:
        """Returns (items, skip_reason). skip_reason is None when reranking applied."""
        if not items:
            return items, None
        if not self.available:
            return items[:top_k], "reranker unavailable"

        token = cancel.child(self.timeout_s) if cancel is not None else CancelToken(self.timeout_s)
        texts = [it.chunk.text for it in items]
        try:
            fut = self.pool.submit(_score_all, self.scorer, query, texts)
            scores = list(wait_future(fut, token))
            if len(scores) != len(items):
                raise ValueError(f"scorer returned {len(scores)} scores for {len(items)} texts")
        except RetrievalTimeout:
            logger.warning("rerank timed out after %.1fs; keeping fused order", self.timeout_s)
            return items[:top_k], RERANK_TIMED_OUT
        except PoolSaturated as exc:
            logger.warning("rerank skipped: %s", exc)
            return items[:top_k], "rerank pool saturated"
        except Exception as exc:
            logger.warning("rerank failed (%s); keeping fused order", exc)
            return items[:top_k], f"rerank failed: {exc}"

        # stable sort keeps fused order among equal rerank scores
        order = sorted(range(len(items)), key=lambda i: -float(scores[i]))
        out = [items[i].model_copy(update={"rerank_score": float(scores[i])}) for i in order]
        return out[:top_k], None
