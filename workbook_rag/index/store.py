"""
On-disk layout of a saved index directory:

  meta.json             format version, dim, generation, counts
  chunks.jsonl          one Chunk per line
  entries.jsonl         chunk_id, content_hash, pending
  embeddings.npy        float32 [N, D], rows keyed by content hash
  embedding_keys.json   content hashes, aligned with embeddings.npy

The keyword index is not stored; it is rebuilt from chunk text on load.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np

from ..embed.cache import EmbeddingCache
from ..errors import IntegrityError, StructuralError
from .arena import ChunkArena
from .dual import DualIndex
from .schema import Chunk

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def save(index_dir: str | Path, arena: ChunkArena, index: DualIndex, cache: EmbeddingCache) -> Path:
    out_dir = Path(index_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    chunks = sorted(arena.all_chunks(), key=lambda c: (c.workbook_id, int(c.level), c.id))
    with open(out_dir / "chunks.jsonl", "w", encoding="utf-8") as out:
        for ch in chunks:
            out.write(ch.model_dump_json() + "\n")

    entries = index.entries()
    with open(out_dir / "entries.jsonl", "w", encoding="utf-8") as out:
        for e in entries:
            row = {"chunk_id": e.chunk_id, "content_hash": e.content_hash, "pending": e.pending}
            out.write(json.dumps(row) + "\n")

    keys, matrix = cache.export()
    np.save(out_dir / "embeddings.npy", matrix)
    (out_dir / "embedding_keys.json").write_text(json.dumps(keys), encoding="utf-8")

    meta = {
        "format_version": FORMAT_VERSION,
        "dim": cache.dim,
        "generation": index.generation,
        "chunks": len(chunks),
        "entries": len(entries),
        "embeddings": len(keys),
    }
    (out_dir / "meta.json").write_text(json.dumps(meta, indent=2), encoding="utf-8")
    logger.info("saved %d chunks / %d embeddings to %s", len(chunks), len(keys), out_dir)
    return out_dir


def _read_jsonl(path: Path) -> List[dict]:
    rows = []
    with open(path, "r", encoding="utf-8") as f:
        for i, ln in enumerate(f, start=1):
            s = ln.strip()
            if not s:
                continue
            try:
                rows.append(json.loads(s))
            except json.JSONDecodeError as e:
                raise IntegrityError(f"failed to parse line {i} of {path}: {e}") from e
    return rows


def load(
    index_dir: str | Path,
    *,
    bm25_variant: str = "plus",
    bm25_k1: float = 1.5,
    bm25_b: float = 0.75,
) -> Tuple[ChunkArena, DualIndex, EmbeddingCache]:
    """Rebuild arena, dual index and cache. Raises IntegrityError on any inconsistency."""
    src = Path(index_dir)
    meta_path = src / "meta.json"
    if not meta_path.exists():
        raise FileNotFoundError(f"no saved index at {src}")
    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    if meta.get("format_version") != FORMAT_VERSION:
        raise IntegrityError(f"unsupported index format {meta.get('format_version')!r}")

    keys = json.loads((src / "embedding_keys.json").read_text(encoding="utf-8"))
    matrix = np.load(src / "embeddings.npy")
    try:
        cache = EmbeddingCache.from_arrays(keys, matrix, dim=meta.get("dim"))
    except Exception as e:
        raise IntegrityError(f"embedding store is unreadable: {e}") from e

    chunks = [Chunk.model_validate(d) for d in _read_jsonl(src / "chunks.jsonl")]
    arena = ChunkArena()
    # parents first
    for ch in sorted(chunks, key=lambda c: (int(c.level), c.workbook_id, c.ordinal, c.id)):
        try:
            arena.put(ch)
        except StructuralError as e:
            raise IntegrityError(str(e), chunk_id=ch.id) from e
    problems = arena.validate()
    if problems:
        raise IntegrityError(f"chunk tree is inconsistent: {problems[0]}")
    for ch in chunks:
        arena.ancestors(ch.id)

    entries: Dict[str, dict] = {}
    for row in _read_jsonl(src / "entries.jsonl"):
        cid = row.get("chunk_id")
        ch = arena.get(cid)
        if ch is None:
            raise IntegrityError(f"index entry {cid} has no chunk", chunk_id=cid)
        if row.get("content_hash") != ch.content_hash:
            raise IntegrityError(f"index entry {cid} disagrees with its chunk hash", chunk_id=cid)
        if not row.get("pending") and ch.content_hash not in cache:
            raise IntegrityError(f"index entry {cid} has no stored embedding", chunk_id=cid)
        entries[cid] = row
    for ch in chunks:
        if ch.id not in entries:
            raise IntegrityError(f"chunk {ch.id} is missing from the index", chunk_id=ch.id)

    index = DualIndex(dim=cache.dim, bm25_variant=bm25_variant, bm25_k1=bm25_k1, bm25_b=bm25_b)
    for ch in sorted(chunks, key=lambda c: (int(c.level), c.id)):
        vec = None if entries[ch.id].get("pending") else cache.get(ch.content_hash)
        index.upsert(ch, vec)
    index.generation = max(index.generation, int(meta.get("generation", 0)))
    logger.info("loaded %d chunks (%d pending) from %s", len(chunks), len(index.pending_ids()), src)
    return arena, index, cache
