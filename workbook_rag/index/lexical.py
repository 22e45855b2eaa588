from __future__ import annotations

import re
from collections import Counter
from typing import Dict, Iterable, List, Set

from rank_bm25 import BM25L, BM25Okapi, BM25Plus

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_VARIANTS = {"okapi": BM25Okapi, "plus": BM25Plus, "l": BM25L}


def tokenize(s: str) -> List[str]:
    return _TOKEN_RE.findall((s or "").lower())


class LexicalIndex:
    """
    Inverted index (term -> chunk id -> tf) plus per-chunk token lists.

    BM25 statistics are computed over the candidate set handed to `scores`,
    so a filtered query sees idf/avgdl for the filtered corpus only.
    Not thread-safe on its own; DualIndex serializes writes.
    """

    def __init__(self, variant: str = "plus", k1: float = 1.5, b: float = 0.75) -> None:
        if variant not in _VARIANTS:
            raise ValueError(f"unknown bm25 variant {variant!r}; expected one of {sorted(_VARIANTS)}")
        self.variant = variant
        self.k1 = k1
        self.b = b
        self._tokens: Dict[str, List[str]] = {}
        self._postings: Dict[str, Dict[str, int]] = {}

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._tokens

    def add(self, chunk_id: str, text: str) -> Dict[str, int]:
        """Index `text` under `chunk_id`; returns its posting contribution."""
        self.remove(chunk_id)
        toks = tokenize(text)
        tf = Counter(toks)
        self._tokens[chunk_id] = toks
        for term, n in tf.items():
            self._postings.setdefault(term, {})[chunk_id] = n
        return dict(tf)

    def remove(self, chunk_id: str) -> bool:
        toks = self._tokens.pop(chunk_id, None)
        if toks is None:
            return False
        for term in set(toks):
            plist = self._postings.get(term)
            if plist is None:
                continue
            plist.pop(chunk_id, None)
            if not plist:
                del self._postings[term]
        return True

    def document_frequency(self, term: str) -> int:
        return len(self._postings.get(term.lower(), {}))

    def matching(self, terms: Iterable[str]) -> Set[str]:
        out: Set[str] = set()
        for t in terms:
            out.update(self._postings.get(t, {}))
        return out

    def scores(self, query: str, candidates: Iterable[str]) -> Dict[str, float]:
        """BM25 scores for candidates containing at least one query term."""
        q_terms = tokenize(query)
        cand = [cid for cid in candidates if cid in self._tokens]
        if not q_terms or not cand:
            return {}
        hits = self.matching(q_terms)
        hit_rows = [i for i, cid in enumerate(cand) if cid in hits]
        if not hit_rows:
            return {}
        corpus = [self._tokens[cid] for cid in cand]
        bm25 = _VARIANTS[self.variant](corpus, k1=self.k1, b=self.b)
        vals = bm25.get_batch_scores(q_terms, hit_rows)
        return {cand[i]: float(s) for i, s in zip(hit_rows, vals)}
