from __future__ import annotations

import threading
from typing import Dict, List, Optional

from ..errors import IntegrityError, StructuralError
from .schema import Chunk, ChunkLevel

MAX_DEPTH = int(ChunkLevel.ROW)


class ChunkArena:
    """
    Chunks addressed by id with explicit parent back-references.

    Writes come only from the ingestion pipeline (one writer per workbook);
    reads are plain dict lookups and are safe alongside them.
    """

    def __init__(self) -> None:
        self._chunks: Dict[str, Chunk] = {}
        self._children: Dict[str, Dict[int, str]] = {}
        self._roots: Dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._chunks)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._chunks

    def get(self, chunk_id: str) -> Optional[Chunk]:
        return self._chunks.get(chunk_id)

    def require(self, chunk_id: str) -> Chunk:
        ch = self._chunks.get(chunk_id)
        if ch is None:
            raise IntegrityError(f"chunk {chunk_id} is missing from the arena", chunk_id=chunk_id)
        return ch

    def root_id(self, workbook_id: str) -> Optional[str]:
        return self._roots.get(workbook_id)

    def workbook_ids(self) -> List[str]:
        return sorted(self._roots)

    def all_chunks(self) -> List[Chunk]:
        return list(self._chunks.values())

    # ---------- writes ----------
    def put(self, chunk: Chunk) -> None:
        with self._lock:
            if chunk.parent_id is None:
                if chunk.level != ChunkLevel.WORKBOOK:
                    raise StructuralError(f"non-root chunk {chunk.id} has no parent")
                other = self._roots.get(chunk.workbook_id)
                if other is not None and other != chunk.id:
                    raise StructuralError(f"workbook {chunk.workbook_id} already has a root")
                self._roots[chunk.workbook_id] = chunk.id
            else:
                if chunk.parent_id not in self._chunks:
                    raise StructuralError(
                        f"parent {chunk.parent_id} of chunk {chunk.id} does not exist"
                    )
                siblings = self._children.setdefault(chunk.parent_id, {})
                holder = siblings.get(chunk.ordinal)
                if holder is not None and holder != chunk.id:
                    raise StructuralError(
                        f"ordinal {chunk.ordinal} under {chunk.parent_id} is taken by {holder}"
                    )
                previous = self._chunks.get(chunk.id)
                if previous is not None and (
                    previous.parent_id != chunk.parent_id or previous.ordinal != chunk.ordinal
                ):
                    raise StructuralError(f"chunk {chunk.id} cannot move within the tree")
                siblings[chunk.ordinal] = chunk.id
            self._chunks[chunk.id] = chunk

    def remove(self, chunk_id: str) -> Optional[Chunk]:
        with self._lock:
            ch = self._chunks.get(chunk_id)
            if ch is None:
                return None
            if self._children.get(chunk_id):
                raise StructuralError(f"chunk {chunk_id} still has children; remove them first")
            self._children.pop(chunk_id, None)
            if ch.parent_id is None:
                self._roots.pop(ch.workbook_id, None)
            else:
                siblings = self._children.get(ch.parent_id)
                if siblings is not None and siblings.get(ch.ordinal) == chunk_id:
                    del siblings[ch.ordinal]
            del self._chunks[chunk_id]
            return ch

    # ---------- traversal ----------
    def children(self, chunk_id: str) -> List[Chunk]:
        kids = self._children.get(chunk_id) or {}
        return [self._chunks[cid] for _, cid in sorted(kids.items()) if cid in self._chunks]

    def descendants(self, chunk_id: str) -> List[Chunk]:
        """All chunks below `chunk_id`, deepest first (safe removal order)."""
        out: List[Chunk] = []

        def walk(cid: str) -> None:
            for child in self.children(cid):
                walk(child.id)
                out.append(child)

        walk(chunk_id)
        return out

    def ancestors(self, chunk_id: str) -> List[Chunk]:
        """Ancestors root first, excluding the chunk itself."""
        chain: List[Chunk] = []
        current = self.require(chunk_id)
        hops = 0
        while current.parent_id is not None:
            hops += 1
            if hops > MAX_DEPTH:
                raise IntegrityError(f"ancestor walk from {chunk_id} exceeds {MAX_DEPTH} hops", chunk_id)
            parent = self._chunks.get(current.parent_id)
            if parent is None:
                raise IntegrityError(
                    f"chunk {current.id} points at missing parent {current.parent_id}",
                    chunk_id=current.id,
                )
            chain.append(parent)
            current = parent
        if current.level != ChunkLevel.WORKBOOK:
            raise IntegrityError(f"chunk {current.id} is parentless but not a workbook root", current.id)
        chain.reverse()
        return chain

    def subtree(self, workbook_id: str) -> Dict[str, Chunk]:
        root = self._roots.get(workbook_id)
        if root is None:
            return {}
        out = {root: self._chunks[root]}
        for ch in self.descendants(root):
            out[ch.id] = ch
        return out

    def validate(self) -> List[str]:
        problems: List[str] = []
        seen: Dict[tuple, str] = {}
        for ch in list(self._chunks.values()):
            if ch.parent_id is None:
                if ch.level != ChunkLevel.WORKBOOK:
                    problems.append(f"{ch.id}: parentless {ch.level.name.lower()} chunk")
                continue
            if ch.parent_id not in self._chunks:
                problems.append(f"{ch.id}: missing parent {ch.parent_id}")
            key = (ch.parent_id, ch.ordinal)
            if key in seen and seen[key] != ch.id:
                problems.append(f"{ch.id}: ordinal {ch.ordinal} shared with {seen[key]}")
            seen[key] = ch.id
        return problems
