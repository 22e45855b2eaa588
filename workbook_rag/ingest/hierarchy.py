"""
Workbook -> Sheet -> Section -> Row chunk trees, and the diff used on
re-ingestion.

Chunk ids are derived from (workbook id, level, ordinal path), so the same
position in the same workbook always maps to the same id. Content hashes cover
text plus structural metadata, so a re-ingested chunk keeps its id and only
changes its hash when what it says changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import StructuralError
from ..index.schema import Chunk, ChunkLevel, Scalar, make_chunk_id, make_content_hash
from .clean import normalize_cell, normalize_header
from .parsed import ParsedSheet, ParsedWorkbook, SectionHint

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class _SectionSpan:
    start: int
    end: int                 # exclusive
    label: Optional[str]


@dataclass
class TreeDiff:
    added: List[Chunk] = field(default_factory=list)
    updated: List[Chunk] = field(default_factory=list)
    unchanged: List[Chunk] = field(default_factory=list)
    removed: List[Chunk] = field(default_factory=list)   # deepest first
    upserts: List[Chunk] = field(default_factory=list)   # added + updated, parents first


def resolve_sections(sheet: ParsedSheet) -> List[_SectionSpan]:
    """Turn section hints into contiguous spans covering every row."""
    n = len(sheet.rows)
    hints: Sequence[SectionHint] = sorted(sheet.sections or [], key=lambda h: h.start)
    if not hints:
        return [_SectionSpan(0, n, None)]

    starts = [h.start for h in hints]
    for h in hints:
        if h.start < 0 or h.start >= n:
            raise StructuralError(
                f"sheet {sheet.name!r}: section start {h.start} outside rows 0..{n - 1}"
            )
    if len(set(starts)) != len(starts):
        raise StructuralError(f"sheet {sheet.name!r}: duplicate section starts {starts}")

    spans: List[_SectionSpan] = []
    if starts[0] > 0:
        spans.append(_SectionSpan(0, starts[0], None))
    for i, h in enumerate(hints):
        end = starts[i + 1] if i + 1 < len(hints) else n
        spans.append(_SectionSpan(h.start, end, (h.label or "").strip() or None))
    return spans


class HierarchyBuilder:
    def __init__(self, clock: Callable[[], str] = _utc_now) -> None:
        self._clock = clock

    def build(self, workbook_id: str, workbook: ParsedWorkbook) -> List[Chunk]:
        """Chunk tree for one workbook, parents before children, document order."""
        if not workbook_id:
            raise StructuralError("workbook id must be non-empty")
        names = [(s.name or "").strip() for s in workbook.sheets]
        if any(not n for n in names):
            raise StructuralError(f"workbook {workbook_id!r}: sheet with empty name")
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise StructuralError(f"workbook {workbook_id!r}: duplicate sheet names {dupes}")

        now = self._clock()
        title = (workbook.title or workbook_id).strip()
        base: Dict[str, Scalar] = {"workbook_id": workbook_id, "workbook_title": title}

        out: List[Chunk] = []
        root = self._chunk(
            workbook_id,
            ChunkLevel.WORKBOOK,
            (),
            f"Workbook: {title}\nSheets: {', '.join(names)}",
            None,
            dict(base, created_at=now),
        )
        out.append(root)

        for s_ord, sheet in enumerate(workbook.sheets):
            out.extend(self._build_sheet(workbook_id, root.id, s_ord, sheet, base, now))

        check_tree(out)
        logger.debug("built %d chunks for workbook %s", len(out), workbook_id)
        return out

    def _build_sheet(
        self,
        workbook_id: str,
        root_id: str,
        s_ord: int,
        sheet: ParsedSheet,
        base: Dict[str, Scalar],
        now: str,
    ) -> List[Chunk]:
        name = sheet.name.strip()
        headers = [normalize_header(h, i) for i, h in enumerate(sheet.headers)]
        width = max([len(headers)] + [len(r) for r in sheet.rows]) if sheet.rows else len(headers)
        headers += [f"col_{i + 1}" for i in range(len(headers), width)]
        col_str = ", ".join(headers)
        sheet_meta = dict(base, sheet_name=name, column_headers=col_str)

        out: List[Chunk] = []
        sheet_chunk = self._chunk(
            workbook_id,
            ChunkLevel.SHEET,
            (s_ord,),
            f"Sheet: {name}\nColumns: {col_str}\nRows: {len(sheet.rows)}",
            root_id,
            dict(sheet_meta, created_at=now),
        )
        out.append(sheet_chunk)

        for k, span in enumerate(resolve_sections(sheet)):
            first, last = span.start + 1, span.end
            rows_desc = f"Rows {first}-{last}" if span.end > span.start else "Rows: none"
            label = span.label or rows_desc
            sec_meta = dict(sheet_meta, section_label=label, row_start=first, row_end=last)
            section = self._chunk(
                workbook_id,
                ChunkLevel.SECTION,
                (s_ord, k),
                f"Section: {label}\nSheet: {name}\n{rows_desc}",
                sheet_chunk.id,
                dict(sec_meta, created_at=now),
            )
            out.append(section)

            for r_ord, r_idx in enumerate(range(span.start, span.end)):
                cells = [normalize_cell(c) for c in sheet.rows[r_idx]]
                cells = (cells + [""] * (width - len(cells)))[:width]
                text = "; ".join(f"{h}: {c}" for h, c in zip(headers, cells) if c)
                row_meta = dict(sheet_meta, row_number=r_idx + 1, created_at=now)
                if span.label:
                    # positional "Rows a-b" labels shift when rows are appended
                    row_meta["section_label"] = span.label
                out.append(
                    self._chunk(
                        workbook_id,
                        ChunkLevel.ROW,
                        (s_ord, k, r_ord),
                        text,
                        section.id,
                        row_meta,
                    )
                )
        return out

    @staticmethod
    def _chunk(
        workbook_id: str,
        level: ChunkLevel,
        path: Tuple[int, ...],
        text: str,
        parent_id: Optional[str],
        metadata: Dict[str, Scalar],
    ) -> Chunk:
        return Chunk(
            id=make_chunk_id(workbook_id, level, path),
            workbook_id=workbook_id,
            level=level,
            text=text,
            parent_id=parent_id,
            ordinal=path[-1] if path else 0,
            metadata=metadata,
            content_hash=make_content_hash(level, text, metadata),
        )


def check_tree(chunks: Sequence[Chunk]) -> None:
    """Unique ids, exactly one root, parents present, unique sibling ordinals."""
    ids: Dict[str, Chunk] = {}
    for ch in chunks:
        if ch.id in ids:
            raise StructuralError(f"duplicate chunk id {ch.id}")
        ids[ch.id] = ch
    roots = [ch for ch in chunks if ch.parent_id is None]
    if len(roots) != 1 or roots[0].level != ChunkLevel.WORKBOOK:
        raise StructuralError(f"expected exactly one workbook root, found {len(roots)}")
    slots: Dict[Tuple[str, int], str] = {}
    for ch in chunks:
        if ch.parent_id is None:
            continue
        parent = ids.get(ch.parent_id)
        if parent is None:
            raise StructuralError(f"chunk {ch.id} has unknown parent {ch.parent_id}")
        if int(parent.level) >= int(ch.level):
            raise StructuralError(f"chunk {ch.id} is not below its parent {parent.id}")
        key = (ch.parent_id, ch.ordinal)
        if key in slots:
            raise StructuralError(
                f"ordinal {ch.ordinal} under {ch.parent_id} used by {slots[key]} and {ch.id}"
            )
        slots[key] = ch.id


def diff_trees(existing: Dict[str, Chunk], built: Sequence[Chunk]) -> TreeDiff:
    """
    Compare a freshly built tree against the stored one by id, i.e. by
    (level, ordinal path). Unchanged chunks keep the stored object; updated
    chunks keep their original created_at.
    """
    d = TreeDiff()
    built_ids = set()
    for ch in built:
        built_ids.add(ch.id)
        old = existing.get(ch.id)
        if old is None:
            d.added.append(ch)
            d.upserts.append(ch)
        elif old.signature() == ch.signature():
            d.unchanged.append(old)
        else:
            if "created_at" in old.metadata:
                ch = ch.model_copy(
                    update={"metadata": dict(ch.metadata, created_at=old.metadata["created_at"])}
                )
            d.updated.append(ch)
            d.upserts.append(ch)

    gone = [ch for cid, ch in existing.items() if cid not in built_ids]
    d.removed = sorted(gone, key=lambda c: (-int(c.level), c.id))
    return d
