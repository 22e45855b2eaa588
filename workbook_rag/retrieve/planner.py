"""
Hybrid query planning: filter -> vector + keyword scoring -> per-list
normalization -> weighted fusion -> deterministic ordering -> optional rerank.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

import numpy as np

from ..answer.context import ContextAssembler
from ..concurrency import CancelToken
from ..config import RetrievalSettings
from ..embed.query import QueryEmbedder
from ..errors import EmbeddingProviderError, PoolSaturated, RetrievalTimeout
from ..index.arena import ChunkArena
from ..index.dual import DualIndex
from ..index.filters import MetadataFilter
from ..index.schema import Query, RetrievalResult, RetrievedChunk
from .fuse import fuse, normalize, rank, validate_weights
from .rerank import RERANK_TIMED_OUT, Reranker

logger = logging.getLogger(__name__)


class HybridQueryPlanner:
    def __init__(
        self,
        index: DualIndex,
        arena: ChunkArena,
        query_embedder: QueryEmbedder,
        settings: Optional[RetrievalSettings] = None,
        reranker: Optional[Reranker] = None,
        rerank_candidates: int = 50,
        embed_timeout_s: Optional[float] = None,
    ) -> None:
        self.index = index
        self.arena = arena
        self.query_embedder = query_embedder
        self.settings = settings or RetrievalSettings()
        self.reranker = reranker
        self.rerank_candidates = rerank_candidates
        self.embed_timeout_s = embed_timeout_s
        self.assembler = ContextAssembler(arena)

    def depth(self, q: Query) -> int:
        if q.rerank and self.reranker is not None:
            return max(q.top_k, self.rerank_candidates)
        return q.top_k

    def run(self, q: Query, cancel: Optional[CancelToken] = None) -> RetrievalResult:
        """
        Raises InvalidWeights / InvalidFilter before any work, RetrievalTimeout
        if the token fired before the query started, IntegrityError when a
        hit's ancestor chain is broken. Everything else degrades to a partial
        result.
        """
        validate_weights(q.vector_weight, q.keyword_weight)
        flt = MetadataFilter.parse(q.filter)
        token = cancel or CancelToken(self.settings.query_timeout_s)
        token.raise_if_cancelled("query")

        timers: Dict[str, int] = {}
        reasons: List[str] = []
        t0 = time.perf_counter()

        qvec: Optional[np.ndarray] = None
        if q.vector_weight > 0:
            try:
                qvec = self.query_embedder.embed(q.text, token.child(self.embed_timeout_s))
            except (EmbeddingProviderError, RetrievalTimeout, PoolSaturated) as exc:
                logger.warning("query embedding unavailable (%s); keyword-only", exc)
                reasons.append(f"query embedding unavailable: {exc}")
        timers["embed_ms"] = int((time.perf_counter() - t0) * 1000)

        depth = self.depth(q)
        t1 = time.perf_counter()
        with self.index.reading() as reader:
            cands = reader.candidates(flt)

            vec_raw: Dict[str, float] = {}
            if qvec is not None:
                if token.cancelled:
                    reasons.append("vector search skipped: deadline reached")
                else:
                    vec_raw = reader.vector_scores(qvec, cands)

            # keyword scoring is in-process and always runs so a late query
            # still returns something
            kw_raw: Dict[str, float] = {}
            if q.keyword_weight > 0:
                kw_raw = reader.keyword_scores(q.text, cands)

            method = self.settings.normalization
            levels = {cid: reader.entry(cid).level for cid in set(vec_raw) | set(kw_raw)}
            ranked = rank(
                fuse(
                    normalize(vec_raw, method),
                    # a candidate without a query term scores 0, below any term match
                    normalize(kw_raw, method, domain=cands),
                    levels,
                    q.vector_weight,
                    q.keyword_weight,
                ),
                limit=depth,
            )

            # assembled under the same read lock so ancestors cannot vanish
            items: List[RetrievedChunk] = [
                self.assembler.assemble(
                    f.chunk_id, f.fused, vector_score=f.vector, keyword_score=f.keyword
                )
                for f in ranked
            ]
            generation = reader.generation
        timers["search_ms"] = int((time.perf_counter() - t1) * 1000)

        reranked = False
        if q.rerank and self.reranker is not None and items:
            t2 = time.perf_counter()
            if token.cancelled:
                logger.warning("rerank skipped: query deadline reached")
                reasons.append("rerank skipped: deadline reached")
                items = items[: q.top_k]
            else:
                items, skip = self.reranker.rerank(q.text, items, q.top_k, token)
                reranked = skip is None
                if skip:
                    logger.info("rerank skipped: %s", skip)
                if skip == RERANK_TIMED_OUT:
                    reasons.append(skip)
            timers["rerank_ms"] = int((time.perf_counter() - t2) * 1000)
        else:
            items = items[: q.top_k]

        timers["total_ms"] = int((time.perf_counter() - t0) * 1000)
        logger.debug(
            "query %r: %d candidates, %d vector / %d keyword hits, %d returned, timers=%s",
            q.text, len(cands), len(vec_raw), len(kw_raw), len(items), timers,
        )
        return RetrievalResult(
            query=q.text,
            items=items,
            partial=bool(reasons),
            partial_reasons=reasons,
            reranked=reranked,
            generation=generation,
        )
