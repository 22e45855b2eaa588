from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from ..errors import InvalidFilter
from .schema import ChunkLevel, Scalar

FILTERABLE_KEYS = frozenset(
    {"workbook_id", "sheet_name", "section_label", "row_number", "column_headers", "level"}
)

_SCALARS = (str, int, float, bool)


@dataclass(frozen=True)
class MetadataFilter:
    """
    Exact-match predicate over chunk metadata. A list value means any-of.
    One instance is shared by both sub-indexes so they filter identically.
    """

    clauses: Tuple[Tuple[str, Tuple[Scalar, ...]], ...] = ()

    @classmethod
    def parse(cls, raw: Optional[Mapping[str, Any]]) -> "MetadataFilter":
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise InvalidFilter(f"filter must be a mapping, got {type(raw).__name__}")
        clauses = []
        for key in sorted(raw, key=str):
            if not isinstance(key, str) or key not in FILTERABLE_KEYS:
                raise InvalidFilter(
                    f"unknown filter key {key!r}; expected one of {sorted(FILTERABLE_KEYS)}"
                )
            value = raw[key]
            values = tuple(value) if isinstance(value, (list, tuple, set, frozenset)) else (value,)
            if not values:
                raise InvalidFilter(f"filter {key!r} has an empty value list")
            for v in values:
                if not isinstance(v, _SCALARS):
                    raise InvalidFilter(f"filter {key!r} value {v!r} is not a scalar")
            if key == "level":
                try:
                    values = tuple(int(ChunkLevel.parse(v)) for v in values)
                except (KeyError, ValueError) as exc:
                    raise InvalidFilter(f"filter 'level' has unknown value: {exc}") from exc
            clauses.append((key, values))
        return cls(tuple(clauses))

    @property
    def empty(self) -> bool:
        return not self.clauses

    def matches(self, level: ChunkLevel, metadata: Dict[str, Scalar]) -> bool:
        for key, values in self.clauses:
            actual = int(level) if key == "level" else metadata.get(key)
            if actual is None or not any(_same(actual, v) for v in values):
                return False
        return True


def _same(a: Any, b: Any) -> bool:
    # True must not match 1, "1" must not match 1; 2 and 2.0 do match
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b
