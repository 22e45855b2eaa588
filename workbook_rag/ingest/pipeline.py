"""
Workbook ingestion: build the chunk tree, diff it against what is stored,
embed what changed and apply the result to the arena and the dual index.

One workbook is ingested at a time per workbook id (KeyedLocks); different
workbooks proceed in parallel. Apply order keeps every index-visible chunk
resolvable to its root:

  removals  : index first, then arena, deepest chunks first
  upserts   : parents before children, arena first, then index
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional

import numpy as np

from ..concurrency import CancelToken, KeyedLocks
from ..embed.batcher import EmbeddingBatcher
from ..index.arena import ChunkArena
from ..index.dual import DualIndex
from ..index.schema import Chunk, IngestReport
from .hierarchy import HierarchyBuilder, diff_trees
from .parsed import ParsedWorkbook

logger = logging.getLogger(__name__)


class IngestionPipeline:
    def __init__(
        self,
        arena: ChunkArena,
        index: DualIndex,
        batcher: EmbeddingBatcher,
        builder: Optional[HierarchyBuilder] = None,
        ingest_timeout_s: Optional[float] = None,
    ) -> None:
        self.arena = arena
        self.index = index
        self.batcher = batcher
        self.builder = builder or HierarchyBuilder()
        self.ingest_timeout_s = ingest_timeout_s
        self.locks = KeyedLocks()

    def ingest(
        self,
        workbook_id: str,
        workbook: ParsedWorkbook,
        cancel: Optional[CancelToken] = None,
    ) -> IngestReport:
        """
        Raises StructuralError (nothing written). Embedding problems never fail
        the ingestion; affected chunks are stored pending.
        """
        with self.locks.hold(workbook_id):
            built = self.builder.build(workbook_id, workbook)
            d = diff_trees(self.arena.subtree(workbook_id), built)

            # unchanged chunks whose earlier embedding never arrived
            stale = [ch for ch in d.unchanged if self._needs_vector(ch)]

            token = cancel or CancelToken(self.ingest_timeout_s)
            if token.cancelled:
                logger.warning("ingest of %s cancelled before apply", workbook_id)
                return IngestReport(
                    workbook_id=workbook_id,
                    status="failure",
                    error="cancelled before any change was applied",
                )

            to_embed = d.upserts + stale
            vectors, missing = self.batcher.embed_many(
                ((ch.content_hash, ch.text) for ch in to_embed), token
            )

            for ch in d.removed:
                self.index.remove(ch.id)
                self.arena.remove(ch.id)
            for ch in d.upserts:
                self.arena.put(ch)
                self.index.upsert(ch, vectors.get(ch.content_hash))
            for ch in stale:
                self._index_existing(ch, vectors.get(ch.content_hash))

            pending = self.index.pending_ids(workbook_id)
            report = IngestReport(
                workbook_id=workbook_id,
                status="partial" if pending else "success",
                added=[c.id for c in d.added],
                updated=[c.id for c in d.updated],
                unchanged=[c.id for c in d.unchanged],
                removed=[c.id for c in d.removed],
                pending_ids=pending,
            )
        logger.info(
            "ingested %s: %d added, %d updated, %d unchanged, %d removed, %d pending (%d hashes missed)",
            workbook_id,
            len(report.added),
            len(report.updated),
            len(report.unchanged),
            len(report.removed),
            len(report.pending_ids),
            len(missing),
        )
        return report

    def _needs_vector(self, ch: Chunk) -> bool:
        e = self.index.entry(ch.id)
        return e is None or e.pending or e.content_hash != ch.content_hash

    def _index_existing(self, ch: Chunk, vector: Optional[np.ndarray]) -> None:
        e = self.index.entry(ch.id)
        if e is not None and e.content_hash == ch.content_hash:
            if vector is not None:
                self.index.attach_embedding(ch.id, ch.content_hash, vector)
        else:
            self.index.upsert(ch, vector)

    def retry_pending(self, cancel: Optional[CancelToken] = None) -> List[str]:
        """Re-embed every pending chunk. Returns the ids that are still pending."""
        by_workbook: Dict[str, List[str]] = defaultdict(list)
        for cid in self.index.pending_ids():
            e = self.index.entry(cid)
            if e is not None:
                by_workbook[e.workbook_id].append(cid)

        token = cancel or CancelToken(self.ingest_timeout_s)
        for workbook_id in sorted(by_workbook):
            with self.locks.hold(workbook_id):
                chunks = [self.arena.get(cid) for cid in by_workbook[workbook_id]]
                chunks = [ch for ch in chunks if ch is not None]
                vectors, _ = self.batcher.embed_many(
                    ((ch.content_hash, ch.text) for ch in chunks), token
                )
                for ch in chunks:
                    vec = vectors.get(ch.content_hash)
                    if vec is not None:
                        self.index.attach_embedding(ch.id, ch.content_hash, vec)
        still = self.index.pending_ids()
        logger.info("retry_pending: %d still pending", len(still))
        return still

    def remove_workbook(self, workbook_id: str) -> List[str]:
        """Cascade-delete a workbook. Returns removed ids, deepest first."""
        with self.locks.hold(workbook_id):
            root = self.arena.root_id(workbook_id)
            if root is None:
                return []
            doomed = self.arena.descendants(root) + [self.arena.require(root)]
            for ch in doomed:
                self.index.remove(ch.id)
                self.arena.remove(ch.id)
        logger.info("removed workbook %s (%d chunks)", workbook_id, len(doomed))
        return [c.id for c in doomed]
