import numpy as np
import pytest

from workbook_rag.errors import InvalidFilter
from workbook_rag.index.dual import DualIndex
from workbook_rag.index.filters import MetadataFilter
from workbook_rag.index.lexical import LexicalIndex, tokenize
from workbook_rag.index.schema import ChunkLevel
from workbook_rag.ingest.hierarchy import HierarchyBuilder

from helpers import CountingEmbedder, quarterly_workbook


@pytest.fixture
def chunks():
    return HierarchyBuilder().build("wb", quarterly_workbook())


def _vec(emb, text):
    return np.asarray(emb.embed([text])[0], dtype=np.float32)


def _filled(chunks, skip=()):
    emb = CountingEmbedder(dim=32)
    ix = DualIndex()
    for ch in chunks:
        ix.upsert(ch, None if ch.id in skip else _vec(emb, ch.text))
    return ix, emb


def test_tokenize_lowercases_words():
    assert tokenize("Region: North; Q1 Revenue 1,200") == ["region", "north", "q1", "revenue", "1", "200"]


def test_lexical_scores_only_term_matches():
    lex = LexicalIndex()
    lex.add("a", "north revenue q1")
    lex.add("b", "south stock")
    lex.add("c", "revenue revenue")
    scores = lex.scores("revenue", ["a", "b", "c"])
    assert set(scores) == {"a", "c"}
    assert all(s > 0 for s in scores.values())
    assert lex.scores("nothing here", ["a", "b", "c"]) == {}
    assert lex.scores("revenue", []) == {}


def test_lexical_remove_cleans_postings():
    lex = LexicalIndex()
    lex.add("a", "north revenue")
    assert lex.document_frequency("revenue") == 1
    lex.remove("a")
    assert lex.document_frequency("revenue") == 0
    assert "a" not in lex


@pytest.mark.parametrize("variant", ["okapi", "plus", "l"])
def test_lexical_variants_rank_denser_match_higher(variant):
    lex = LexicalIndex(variant)
    lex.add("short", "revenue q1")
    lex.add("long", "revenue q1 plus a lot of other unrelated words in this row")
    lex.add("other", "stock east")
    lex.add("other2", "stock west")
    lex.add("other3", "gadgets west")
    lex.add("other4", "widgets east")
    scores = lex.scores("revenue q1", ["short", "long", "other", "other2", "other3", "other4"])
    assert scores["short"] > scores["long"]


def test_pending_entry_is_keyword_visible_vector_invisible(chunks):
    row = next(c for c in chunks if c.level == ChunkLevel.ROW and "Widgets" in c.text)
    ix, emb = _filled(chunks, skip={row.id})
    assert ix.entry(row.id).pending
    assert ix.pending_ids() == [row.id]

    with ix.reading() as reader:
        cands = reader.candidates()
        assert row.id in cands
        vec_scores = reader.vector_scores(_vec(emb, "Widgets"), cands)
        kw_scores = reader.keyword_scores("Widgets", cands)
    assert row.id not in vec_scores
    assert row.id in kw_scores


def test_attach_embedding_checks_content_hash(chunks):
    row = next(c for c in chunks if c.level == ChunkLevel.ROW)
    ix = DualIndex()
    ix.upsert(row, None)
    vec = np.ones(8, dtype=np.float32)
    assert not ix.attach_embedding(row.id, "stale-hash", vec)
    assert ix.entry(row.id).pending
    assert ix.attach_embedding(row.id, row.content_hash, vec)
    e = ix.entry(row.id)
    assert not e.pending and e.embedding_key == row.content_hash


def test_remove_drops_both_sides_and_bumps_generation(chunks):
    ix, emb = _filled(chunks)
    before = ix.generation
    row = next(c for c in chunks if c.level == ChunkLevel.ROW)
    assert ix.remove(row.id)
    assert not ix.remove(row.id)
    assert ix.generation == before + 1
    with ix.reading() as reader:
        cands = reader.candidates()
        assert row.id not in cands
        assert row.id not in reader.keyword_scores(row.text, cands)


def test_upsert_entry_snapshot(chunks):
    ix, _ = _filled(chunks)
    row = next(c for c in chunks if c.level == ChunkLevel.ROW)
    e = ix.entry(row.id)
    assert e.content_hash == row.content_hash
    assert e.terms["north"] == 1
    assert "created_at" not in e.metadata
    assert ix.stats()["vectors"] == len(chunks)


def test_filter_narrows_both_subsearches(chunks):
    ix, emb = _filled(chunks)
    flt = MetadataFilter.parse({"sheet_name": "Sales"})
    with ix.reading() as reader:
        cands = reader.candidates(flt)
        kw = reader.keyword_scores("revenue", cands)
        vec = reader.vector_scores(_vec(emb, "revenue"), cands)
    names = {ix.entry(c).metadata.get("sheet_name") for c in cands}
    assert names == {"Sales"}
    assert set(kw) <= set(cands) and set(vec) <= set(cands)


def test_filter_level_and_any_of(chunks):
    ix, _ = _filled(chunks)
    with ix.reading() as reader:
        rows = reader.candidates(MetadataFilter.parse({"level": "row"}))
        both = reader.candidates(MetadataFilter.parse({"level": [0, "sheet"]}))
        by_number = reader.candidates(MetadataFilter.parse({"row_number": [1, 2], "sheet_name": "Inventory"}))
    assert len(rows) == 7
    assert len(both) == 3
    assert len(by_number) == 2


@pytest.mark.parametrize(
    "raw",
    [
        {"colour": "red"},
        {"sheet_name": {"$in": ["Sales"]}},
        {"sheet_name": []},
        {"level": "paragraph"},
        {"row_number": [1, [2]]},
        ["sheet_name"],
    ],
)
def test_invalid_filters_raise(raw):
    with pytest.raises(InvalidFilter):
        MetadataFilter.parse(raw)


def test_filter_matching_is_type_strict():
    flt = MetadataFilter.parse({"row_number": 1})
    assert flt.matches(ChunkLevel.ROW, {"row_number": 1})
    assert flt.matches(ChunkLevel.ROW, {"row_number": 1.0})
    assert not flt.matches(ChunkLevel.ROW, {"row_number": True})
    assert not flt.matches(ChunkLevel.ROW, {"row_number": "1"})
    assert not flt.matches(ChunkLevel.ROW, {})
