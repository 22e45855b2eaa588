from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .answer.context import pack_context
from .concurrency import BoundedExecutor, CancelToken
from .config import AppConfig, load_config
from .embed.batcher import EmbeddingBatcher
from .embed.cache import EmbeddingCache
from .embed.providers import EmbeddingProvider, make_embedder
from .embed.query import QueryEmbedder
from .index import store
from .index.arena import ChunkArena
from .index.dual import DualIndex
from .index.schema import IngestReport, Query, RetrievalResult
from .ingest.csv_tsv import read_workbook
from .ingest.hierarchy import HierarchyBuilder
from .ingest.parsed import ParsedWorkbook
from .ingest.pipeline import IngestionPipeline
from .retrieve.planner import HybridQueryPlanner
from .retrieve.rerank import RerankScorer, Reranker, make_scorer
from .utils.log import JsonlLog

logger = logging.getLogger(__name__)

__all__ = ["WorkbookRetriever", "load_config", "ingest_path", "query_text"]


class WorkbookRetriever:
    """
    Owns the arena, dual index, embedding cache and both worker pools.

    Thread-safe: ingest/remove calls for different workbooks run in parallel,
    calls for the same workbook are serialized, and queries run alongside
    both.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        embedder: Optional[EmbeddingProvider] = None,
        scorer: Optional[RerankScorer] = None,
        *,
        _arena: Optional[ChunkArena] = None,
        _index: Optional[DualIndex] = None,
        _cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.config = cfg = config or AppConfig()
        emb, ret, rr, cc = cfg.embedding, cfg.retrieval, cfg.reranker, cfg.concurrency

        self.cache = _cache if _cache is not None else EmbeddingCache(dim=emb.dim)
        self.arena = _arena if _arena is not None else ChunkArena()
        self.index = _index if _index is not None else DualIndex(
            dim=self.cache.dim,
            bm25_variant=ret.bm25_variant,
            bm25_k1=ret.bm25_k1,
            bm25_b=ret.bm25_b,
        )
        self.embedder = embedder or make_embedder(emb)

        self.ingest_pool = BoundedExecutor(
            cc.ingest_workers, cc.ingest_queue, name="ingest", block=cc.block_when_full
        )
        self.query_pool = BoundedExecutor(
            cc.query_workers, cc.query_queue, name="query", block=cc.block_when_full
        )

        self.batcher = EmbeddingBatcher(
            self.embedder,
            self.cache,
            self.ingest_pool,
            batch_size=emb.batch_size,
            max_wait_ms=emb.max_wait_ms,
            max_queue=emb.max_queue,
            max_attempts=emb.max_attempts,
            backoff_initial_s=emb.backoff_initial_s,
            backoff_max_s=emb.backoff_max_s,
            block_when_full=cc.block_when_full,
        )
        self.pipeline = IngestionPipeline(
            self.arena,
            self.index,
            self.batcher,
            HierarchyBuilder(),
            ingest_timeout_s=emb.ingest_timeout_s,
        )

        if scorer is None and rr.enabled:
            scorer = make_scorer(rr)
        reranker = Reranker(scorer, self.query_pool, rr.timeout_s) if scorer is not None else None
        self.planner = HybridQueryPlanner(
            self.index,
            self.arena,
            QueryEmbedder(self.embedder, self.query_pool, dim=lambda: self.cache.dim),
            settings=ret,
            reranker=reranker,
            rerank_candidates=rr.candidates,
            embed_timeout_s=emb.timeout_s,
        )

    # ---------- ingestion ----------
    def ingest(
        self, workbook_id: str, workbook: ParsedWorkbook, cancel: Optional[CancelToken] = None
    ) -> IngestReport:
        return self.pipeline.ingest(workbook_id, workbook, cancel)

    def remove_workbook(self, workbook_id: str) -> List[str]:
        return self.pipeline.remove_workbook(workbook_id)

    def retry_pending(self, cancel: Optional[CancelToken] = None) -> List[str]:
        return self.pipeline.retry_pending(cancel)

    def pending_ids(self, workbook_id: Optional[str] = None) -> List[str]:
        return self.index.pending_ids(workbook_id)

    # ---------- queries ----------
    def query(self, query: Query | str, cancel: Optional[CancelToken] = None, **kwargs: Any) -> RetrievalResult:
        """Accepts a Query or plain text plus Query fields as keywords."""
        if isinstance(query, str):
            kwargs.setdefault("top_k", self.config.retrieval.top_k)
            kwargs.setdefault("vector_weight", self.config.retrieval.vector_weight)
            kwargs.setdefault("keyword_weight", self.config.retrieval.keyword_weight)
            kwargs.setdefault("rerank", self.config.reranker.enabled)
            query = Query(text=query, **kwargs)
        return self.planner.run(query, cancel)

    # ---------- maintenance ----------
    def check_integrity(self) -> List[str]:
        """Problems found in the arena or between arena and index; empty when healthy."""
        problems = self.arena.validate()
        for e in self.index.entries():
            ch = self.arena.get(e.chunk_id)
            if ch is None:
                problems.append(f"{e.chunk_id}: indexed but missing from the arena")
            elif ch.content_hash != e.content_hash:
                problems.append(f"{e.chunk_id}: index hash differs from chunk hash")
            elif not e.pending and e.content_hash not in self.cache:
                problems.append(f"{e.chunk_id}: embedded entry without a cached vector")
        for ch in self.arena.all_chunks():
            if ch.id not in self.index:
                problems.append(f"{ch.id}: chunk not indexed")
        return sorted(problems)

    def stats(self) -> Dict[str, int]:
        out = self.index.stats()
        out["chunks"] = len(self.arena)
        out["workbooks"] = len(self.arena.workbook_ids())
        out["cached_embeddings"] = len(self.cache)
        return out

    def save(self, index_dir: str | Path | None = None) -> Path:
        return store.save(index_dir or self.config.app.index_dir, self.arena, self.index, self.cache)

    @classmethod
    def load(
        cls,
        index_dir: str | Path | None = None,
        config: Optional[AppConfig] = None,
        embedder: Optional[EmbeddingProvider] = None,
        scorer: Optional[RerankScorer] = None,
    ) -> "WorkbookRetriever":
        cfg = config or AppConfig()
        ret = cfg.retrieval
        arena, index, cache = store.load(
            index_dir or cfg.app.index_dir,
            bm25_variant=ret.bm25_variant,
            bm25_k1=ret.bm25_k1,
            bm25_b=ret.bm25_b,
        )
        return cls(cfg, embedder, scorer, _arena=arena, _index=index, _cache=cache)

    def close(self) -> None:
        self.batcher.close()
        self.ingest_pool.shutdown(wait=True)
        self.query_pool.shutdown(wait=True)

    def __enter__(self) -> "WorkbookRetriever":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# ---------- CLI helpers ----------
def _open(cfg: AppConfig) -> WorkbookRetriever:
    index_dir = Path(cfg.app.index_dir)
    if (index_dir / "meta.json").exists():
        return WorkbookRetriever.load(index_dir, cfg)
    return WorkbookRetriever(cfg)


def ingest_path(path: str | Path, cfg: AppConfig, workbook_id: Optional[str] = None) -> IngestReport:
    """Read a CSV/TSV workbook, ingest it into the saved index and save it back."""
    p = Path(path).resolve()
    log = JsonlLog(Path(cfg.app.log_dir) / "ingest.log.jsonl")
    wb_id = workbook_id or p.stem
    parsed = read_workbook(p)
    t0 = time.perf_counter()
    with _open(cfg) as retriever:
        report = retriever.ingest(wb_id, parsed)
        retriever.save()
    log.write(
        {
            "event": "ingest",
            "path": str(p),
            "workbook_id": wb_id,
            "status": report.status,
            "added": len(report.added),
            "updated": len(report.updated),
            "unchanged": len(report.unchanged),
            "removed": len(report.removed),
            "pending": len(report.pending_ids),
            "elapsed_ms": int((time.perf_counter() - t0) * 1000),
        }
    )
    return report


def query_text(
    question: str,
    cfg: AppConfig,
    top_k: Optional[int] = None,
    filters: Optional[Dict[str, Any]] = None,
    vector_weight: Optional[float] = None,
    keyword_weight: Optional[float] = None,
    rerank: Optional[bool] = None,
    max_chars: int = 1500,
) -> dict:
    """Retrieval -> context packing, returned as a plain dict for printing or saving."""
    ret = cfg.retrieval
    q = Query(
        text=question,
        filter=filters or None,
        top_k=top_k or ret.top_k,
        vector_weight=ret.vector_weight if vector_weight is None else vector_weight,
        keyword_weight=ret.keyword_weight if keyword_weight is None else keyword_weight,
        rerank=cfg.reranker.enabled if rerank is None else rerank,
    )
    t0 = time.perf_counter()
    with _open(cfg) as retriever:
        result = retriever.query(q)
    elapsed = int((time.perf_counter() - t0) * 1000)

    answer, used = pack_context(result.items, max_chars=max_chars)
    citations = [it.citation for it in used]
    payload = {
        "question": question,
        "answer": answer,
        "citations": citations,
        "contexts": [
            {
                "id": it.chunk.id,
                "heading_path": it.heading_path,
                "level": it.chunk.level.name.lower(),
                "score": it.fused_score,
                "rerank_score": it.rerank_score,
                "text": it.chunk.text[:1000],
            }
            for it in result.items
        ],
        "partial": result.partial,
        "partial_reasons": result.partial_reasons,
        "reranked": result.reranked,
        "trace": {"top_context_ids": result.chunk_ids, "generation": result.generation, "total_ms": elapsed},
    }
    JsonlLog(Path(cfg.app.log_dir) / "queries.log.jsonl").write(
        {"question": question, "filter": filters, "trace": payload["trace"], "citations": citations}
    )
    return payload
