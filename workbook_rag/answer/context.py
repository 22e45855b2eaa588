from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from ..index.arena import ChunkArena
from ..index.schema import Chunk, ChunkLevel, RetrievedChunk, Scalar


def _label(ch: Chunk) -> str:
    m = ch.metadata
    if ch.level == ChunkLevel.WORKBOOK:
        return str(m.get("workbook_title") or ch.workbook_id)
    if ch.level == ChunkLevel.SHEET:
        return str(m.get("sheet_name") or "")
    if ch.level == ChunkLevel.SECTION:
        return str(m.get("section_label") or "")
    return f"Row {m.get('row_number')}"


def _format_heading(path: List[str]) -> str:
    return " > ".join(p for p in path if p)


class ContextAssembler:
    """
    Attaches the ancestor chain (root first) to a hit and renders a
    citation-ready context block. Must run while the index read lock is held
    so the chain cannot be removed underneath it.
    """

    def __init__(self, arena: ChunkArena):
        self.arena = arena

    def assemble(
        self,
        chunk_id: str,
        fused_score: float,
        vector_score: float = 0.0,
        keyword_score: float = 0.0,
    ) -> RetrievedChunk:
        chunk = self.arena.require(chunk_id)
        ancestors = self.arena.ancestors(chunk_id)   # IntegrityError on a broken chain
        chain = ancestors + [chunk]
        heading = _format_heading([_label(c) for c in chain])

        lines = [heading]
        cols = chunk.metadata.get("column_headers")
        if cols and chunk.level >= ChunkLevel.SECTION:
            lines.append(f"Columns: {cols}")
        if chunk.text:
            lines.append(chunk.text)

        return RetrievedChunk(
            chunk=chunk,
            fused_score=fused_score,
            vector_score=vector_score,
            keyword_score=keyword_score,
            ancestors=ancestors,
            heading_path=heading,
            context="\n".join(lines),
            citation=self._citation(chunk),
        )

    @staticmethod
    def _citation(chunk: Chunk) -> Dict[str, Scalar]:
        m = chunk.metadata
        cite: Dict[str, Scalar] = {
            "chunk_id": chunk.id,
            "workbook_id": chunk.workbook_id,
            "workbook_title": m.get("workbook_title"),
            "level": chunk.level.name.lower(),
        }
        for key in ("sheet_name", "section_label", "row_number"):
            if m.get(key) is not None:
                cite[key] = m[key]
        return cite


def pack_context(
    items: List[RetrievedChunk],
    max_chars: int = 1500,
    join_with: str = "\n\n",
    max_items: Optional[int] = None,
) -> Tuple[str, List[RetrievedChunk]]:
    """Join context blocks in rank order within a character budget."""
    pieces: List[str] = []
    used: List[RetrievedChunk] = []
    for it in items:
        if max_items is not None and len(used) >= max_items:
            break
        txt = re.sub(r"[ \t]+", " ", it.context or it.chunk.text or "")
        txt = re.sub(r"\n{3,}", "\n\n", txt).strip()
        if not txt:
            continue

        budget = max_chars - sum(len(p) for p in pieces) - (len(join_with) if pieces else 0)
        if budget <= 0:
            break
        if len(txt) > budget:
            txt = txt[:budget].rstrip()

        pieces.append(txt)
        used.append(it)

    return join_with.join(pieces).strip(), used
