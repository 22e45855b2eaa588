from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional


@dataclass
class SectionHint:
    start: int                   # 0-based index into ParsedSheet.rows
    label: Optional[str] = None


@dataclass
class ParsedSheet:
    name: str
    headers: List[str]
    rows: List[List[Any]]
    sections: List[SectionHint] = field(default_factory=list)


@dataclass
class ParsedWorkbook:
    title: str
    sheets: List[ParsedSheet] = field(default_factory=list)
