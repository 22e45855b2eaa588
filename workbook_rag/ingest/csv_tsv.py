import csv
import logging
from pathlib import Path
from typing import List, Optional

from .clean import normalize_cell
from .parsed import ParsedSheet, ParsedWorkbook, SectionHint

logger = logging.getLogger(__name__)

SUPPORTED = {".csv", ".tsv"}


def _is_blank(cells: List[str]) -> bool:
    return not any((c or "").strip() for c in cells)


def parse_sheet(path: Path) -> ParsedSheet:
    """
    One delimited file -> one sheet. First row is the header. A blank row
    ends the current section; a lone single-cell row right after it labels
    the next one.
    """
    sep = "\t" if path.suffix.lower() == ".tsv" else ","
    rows: List[List[str]] = []
    sections: List[SectionHint] = []
    with open(path, "r", encoding="utf-8-sig", errors="ignore", newline="") as f:
        reader = csv.reader(f, delimiter=sep)
        try:
            headers = [h.strip() for h in next(reader)]
        except StopIteration:
            return ParsedSheet(name=path.stem, headers=[], rows=[])

        after_break = False
        label: Optional[str] = None
        for cells in reader:
            if _is_blank(cells):
                after_break = True
                continue
            if after_break:
                filled = [c for c in cells if (c or "").strip()]
                if len(filled) == 1 and label is None and (cells[0] or "").strip():
                    label = normalize_cell(filled[0])
                    continue
                sections.append(SectionHint(start=len(rows), label=label))
                after_break = False
                label = None
            rows.append([normalize_cell(c) for c in cells])

    if label is not None:
        logger.debug("%s: label %r has no rows after it; dropped", path.name, label)

    return ParsedSheet(name=path.stem, headers=headers, rows=rows, sections=sections)


def read_workbook(path: str | Path, title: Optional[str] = None) -> ParsedWorkbook:
    """A directory of .csv/.tsv files (one sheet each, by file name) or a single file."""
    p = Path(path)
    if p.is_dir():
        files = sorted(f for f in p.iterdir() if f.is_file() and f.suffix.lower() in SUPPORTED)
        default_title = p.name
    elif p.is_file() and p.suffix.lower() in SUPPORTED:
        files = [p]
        default_title = p.stem
    else:
        raise FileNotFoundError(f"no .csv/.tsv workbook at {p}")
    return ParsedWorkbook(
        title=title or default_title,
        sheets=[parse_sheet(f) for f in files],
    )
