from __future__ import annotations

import hashlib
import json
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

Scalar = Union[str, int, float, bool, None]

# Metadata that identifies what a chunk says rather than where it sits.
STRUCTURAL_KEYS = ("sheet_name", "column_headers", "section_label")


class ChunkLevel(IntEnum):
    WORKBOOK = 0
    SHEET = 1
    SECTION = 2
    ROW = 3

    @classmethod
    def parse(cls, value: Any) -> "ChunkLevel":
        if isinstance(value, ChunkLevel):
            return value
        if isinstance(value, bool):
            raise ValueError(f"not a chunk level: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            return cls[value.strip().upper()]
        raise ValueError(f"not a chunk level: {value!r}")


def make_chunk_id(workbook_id: str, level: ChunkLevel, path: Tuple[int, ...]) -> str:
    key = f"{workbook_id}\x1f{int(level)}\x1f" + ".".join(str(p) for p in path)
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def make_content_hash(level: ChunkLevel, text: str, metadata: Dict[str, Scalar]) -> str:
    payload = {
        "level": int(level),
        "text": text,
        "meta": {k: metadata.get(k) for k in STRUCTURAL_KEYS},
    }
    blob = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class Chunk(BaseModel):
    id: str
    workbook_id: str
    level: ChunkLevel
    text: str
    parent_id: Optional[str] = None   # None only for the workbook root
    ordinal: int = 0                  # position among siblings
    metadata: Dict[str, Scalar] = Field(default_factory=dict)
    content_hash: str

    def signature(self) -> Tuple[Any, ...]:
        """Everything that counts as a change on re-ingestion (not created_at)."""
        meta = {k: v for k, v in self.metadata.items() if k != "created_at"}
        return (self.content_hash, self.parent_id, self.ordinal, tuple(sorted(meta.items())))


class IndexEntry(BaseModel):
    chunk_id: str
    workbook_id: str
    level: ChunkLevel
    content_hash: str
    metadata: Dict[str, Scalar] = Field(default_factory=dict)
    terms: Dict[str, int] = Field(default_factory=dict)   # posting list contribution
    embedding_key: Optional[str] = None
    pending: bool = False                                 # EmbeddingPending


class Query(BaseModel):
    text: str
    filter: Optional[Dict[str, Any]] = None
    top_k: int = Field(default=8, ge=1)
    vector_weight: float = 0.5
    keyword_weight: float = 0.5
    rerank: bool = False


class RetrievedChunk(BaseModel):
    chunk: Chunk
    fused_score: float
    vector_score: float = 0.0
    keyword_score: float = 0.0
    rerank_score: Optional[float] = None
    ancestors: List[Chunk] = Field(default_factory=list)   # root first, excludes chunk
    heading_path: str = ""
    context: str = ""
    citation: Dict[str, Scalar] = Field(default_factory=dict)


class RetrievalResult(BaseModel):
    query: str
    items: List[RetrievedChunk] = Field(default_factory=list)
    partial: bool = False
    partial_reasons: List[str] = Field(default_factory=list)
    reranked: bool = False
    generation: int = 0

    @property
    def chunk_ids(self) -> List[str]:
        return [it.chunk.id for it in self.items]


class IngestReport(BaseModel):
    workbook_id: str
    status: str                      # "success" | "partial" | "failure"
    added: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    pending_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None
