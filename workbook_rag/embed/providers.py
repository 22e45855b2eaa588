"""
Embedding providers. Anything with `embed(texts) -> list of vectors` works;
the index never depends on a concrete model.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
import requests

from ..config import EmbeddingSettings

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


@runtime_checkable
class EmbeddingProvider(Protocol):
    def embed(self, texts: Sequence[str]) -> Sequence[Sequence[float]]:
        ...


class HashingEmbedder:
    """
    Deterministic feature-hashing embedder (offline default). Token overlap
    becomes cosine similarity; stable across processes.
    """

    def __init__(self, dim: int = 256) -> None:
        self.dim = int(dim)

    def _bucket(self, token: str) -> tuple[int, float]:
        h = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        idx = int.from_bytes(h[:4], "little") % self.dim
        sign = 1.0 if h[4] & 1 else -1.0
        return idx, sign

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        out = np.zeros((len(texts), self.dim), dtype=np.float32)
        for i, text in enumerate(texts):
            for token in _TOKEN_RE.findall((text or "").lower()):
                idx, sign = self._bucket(token)
                out[i, idx] += sign
        norms = np.linalg.norm(out, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        return (out / norms).tolist()


class SentenceTransformerEmbedder:
    def __init__(self, model_name: str = "BAAI/bge-small-en-v1.5") -> None:
        self.model_name = model_name
        self.model = None

    def _ensure_model(self):
        if self.model is None:
            from sentence_transformers import SentenceTransformer

            self.model = SentenceTransformer(self.model_name)
        return self.model

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        model = self._ensure_model()
        embs = model.encode(list(texts), normalize_embeddings=True, show_progress_bar=False)
        return np.asarray(embs, dtype="float32").tolist()


class OllamaEmbedder:
    """Embeddings from a local Ollama server (one request per text)."""

    def __init__(
        self,
        model: str = "nomic-embed-text",
        host: str = "http://localhost:11434",
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.model = model
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        out: List[List[float]] = []
        for text in texts:
            r = self._session.post(
                f"{self.host}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json() or {}
            if isinstance(data.get("embedding"), list) and data["embedding"]:
                out.append(data["embedding"])
            elif isinstance(data.get("embeddings"), list) and data["embeddings"]:
                out.append(data["embeddings"][0])
            else:
                raise ValueError(f"ollama returned no embedding for model {self.model}")
        return out


def make_embedder(settings: EmbeddingSettings) -> EmbeddingProvider:
    backend = (settings.backend or "hashing").lower()
    if backend == "hashing":
        return HashingEmbedder(dim=settings.dim or 256)
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedder(settings.model)
    if backend == "ollama":
        return OllamaEmbedder(model=settings.model, host=settings.endpoint, timeout=settings.timeout_s)
    raise ValueError(f"Unsupported embedding backend: {settings.backend}")
