from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class AppSettings(BaseModel):
    index_dir: str = ".workbook_index"
    log_dir: str = "logs"


class EmbeddingSettings(BaseModel):
    backend: Literal["hashing", "sentence-transformers", "ollama"] = "hashing"
    model: str = "BAAI/bge-small-en-v1.5"
    dim: Optional[int] = Field(default=None, ge=1)  # None = fixed by the first vector
    endpoint: str = "http://localhost:11434"
    batch_size: int = Field(default=32, ge=1)
    max_wait_ms: float = Field(default=20.0, ge=0.0)
    max_queue: int = Field(default=1024, ge=1)
    max_attempts: int = Field(default=4, ge=1)
    backoff_initial_s: float = Field(default=0.2, ge=0.0)
    backoff_max_s: float = Field(default=5.0, ge=0.0)
    timeout_s: float = Field(default=60.0, gt=0.0)
    ingest_timeout_s: Optional[float] = None


class RetrievalSettings(BaseModel):
    top_k: int = Field(default=8, ge=1)
    vector_weight: float = 0.5
    keyword_weight: float = 0.5
    normalization: Literal["minmax", "zscore", "none"] = "minmax"
    bm25_variant: Literal["okapi", "plus", "l"] = "plus"
    bm25_k1: float = 1.5
    bm25_b: float = 0.75
    query_timeout_s: Optional[float] = 10.0


class RerankerSettings(BaseModel):
    enabled: bool = False
    backend: Literal["cross-encoder", "overlap"] = "cross-encoder"
    model: str = "BAAI/bge-reranker-base"
    candidates: int = Field(default=50, ge=1)
    timeout_s: float = Field(default=30.0, gt=0.0)


class ConcurrencySettings(BaseModel):
    ingest_workers: int = Field(default=2, ge=1)
    ingest_queue: int = Field(default=64, ge=0)
    query_workers: int = Field(default=4, ge=1)
    query_queue: int = Field(default=64, ge=0)
    block_when_full: bool = True


class AppConfig(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    reranker: RerankerSettings = Field(default_factory=RerankerSettings)
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)


def load_config(path: str | Path | None) -> AppConfig:
    """Read a YAML config. A missing path or file yields the defaults."""
    if path is None:
        return AppConfig()
    p = Path(path)
    if not p.exists():
        return AppConfig()
    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return AppConfig.model_validate(raw)
