"""
Vector and keyword indexes kept in step under one readers-writer lock.

Every write (upsert, remove, attach_embedding) changes both sub-indexes in a
single write-locked step, so a reader never sees a chunk in one and not the
other. Readers take the lock through `reading()` and may run several
sub-searches plus ancestor lookups against one consistent view.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import numpy as np

from ..concurrency import ReadWriteLock
from .dense import DenseIndex
from .filters import MetadataFilter
from .lexical import LexicalIndex
from .schema import Chunk, IndexEntry

logger = logging.getLogger(__name__)


class IndexReader:
    """Read-only view handed out while the read lock is held."""

    def __init__(self, index: "DualIndex") -> None:
        self._ix = index
        self.generation = index.generation

    def entry(self, chunk_id: str) -> Optional[IndexEntry]:
        return self._ix._entries.get(chunk_id)

    def candidates(self, flt: Optional[MetadataFilter] = None) -> List[str]:
        """Chunk ids passing `flt`, in id order. Pending entries included."""
        out = []
        for cid, e in self._ix._entries.items():
            if flt is None or flt.empty or flt.matches(e.level, _filter_view(e)):
                out.append(cid)
        out.sort()
        return out

    def vector_scores(self, query_vec: np.ndarray, candidates: List[str]) -> Dict[str, float]:
        live = [cid for cid in candidates if not self._ix._entries[cid].pending]
        return self._ix._dense.scores(query_vec, live)

    def keyword_scores(self, text: str, candidates: List[str]) -> Dict[str, float]:
        return self._ix._lexical.scores(text, candidates)


def _filter_view(e: IndexEntry) -> Dict:
    view = dict(e.metadata)
    view["workbook_id"] = e.workbook_id
    return view


class DualIndex:
    def __init__(
        self,
        dim: Optional[int] = None,
        bm25_variant: str = "plus",
        bm25_k1: float = 1.5,
        bm25_b: float = 0.75,
    ) -> None:
        self._lock = ReadWriteLock()
        self._dense = DenseIndex(dim)
        self._lexical = LexicalIndex(bm25_variant, k1=bm25_k1, b=bm25_b)
        self._entries: Dict[str, IndexEntry] = {}
        self.generation = 0

    @property
    def dim(self) -> Optional[int]:
        return self._dense.dim

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._entries

    # ---------- writes ----------
    def upsert(self, chunk: Chunk, vector: Optional[np.ndarray] = None) -> IndexEntry:
        """Index `chunk`; without a vector the entry is pending (keyword only)."""
        with self._lock.write_lock():
            if vector is not None:
                self._dense.add(chunk.id, vector)
            else:
                self._dense.remove(chunk.id)
            terms = self._lexical.add(chunk.id, chunk.text)
            entry = IndexEntry(
                chunk_id=chunk.id,
                workbook_id=chunk.workbook_id,
                level=chunk.level,
                content_hash=chunk.content_hash,
                metadata={k: v for k, v in chunk.metadata.items() if k != "created_at"},
                terms=terms,
                embedding_key=chunk.content_hash if vector is not None else None,
                pending=vector is None,
            )
            self._entries[chunk.id] = entry
            self.generation += 1
            return entry

    def attach_embedding(self, chunk_id: str, content_hash: str, vector: np.ndarray) -> bool:
        """Clear the pending state if the entry still carries `content_hash`."""
        with self._lock.write_lock():
            e = self._entries.get(chunk_id)
            if e is None or e.content_hash != content_hash:
                return False
            self._dense.add(chunk_id, vector)
            self._entries[chunk_id] = e.model_copy(
                update={"embedding_key": content_hash, "pending": False}
            )
            self.generation += 1
            return True

    def remove(self, chunk_id: str) -> bool:
        with self._lock.write_lock():
            if self._entries.pop(chunk_id, None) is None:
                return False
            self._dense.remove(chunk_id)
            self._lexical.remove(chunk_id)
            self.generation += 1
            return True

    # ---------- reads ----------
    @contextmanager
    def reading(self) -> Iterator[IndexReader]:
        with self._lock.read_lock():
            yield IndexReader(self)

    def entry(self, chunk_id: str) -> Optional[IndexEntry]:
        with self._lock.read_lock():
            return self._entries.get(chunk_id)

    def entries(self) -> List[IndexEntry]:
        with self._lock.read_lock():
            return [self._entries[k] for k in sorted(self._entries)]

    def pending_ids(self, workbook_id: Optional[str] = None) -> List[str]:
        with self._lock.read_lock():
            return sorted(
                cid
                for cid, e in self._entries.items()
                if e.pending and (workbook_id is None or e.workbook_id == workbook_id)
            )

    def stats(self) -> Dict[str, int]:
        with self._lock.read_lock():
            pending = sum(1 for e in self._entries.values() if e.pending)
            return {
                "entries": len(self._entries),
                "vectors": len(self._dense),
                "pending": pending,
                "generation": self.generation,
            }
