import pytest

from workbook_rag.errors import StructuralError
from workbook_rag.index.arena import ChunkArena
from workbook_rag.index.schema import ChunkLevel
from workbook_rag.ingest.hierarchy import HierarchyBuilder, diff_trees
from workbook_rag.ingest.parsed import ParsedSheet, ParsedWorkbook, SectionHint

from helpers import quarterly_workbook


def _fixed_clock(value="2024-01-01T00:00:00+00:00"):
    return lambda: value


def _by_level(chunks, level):
    return [c for c in chunks if c.level == level]


def test_build_shapes_tree_parents_first():
    chunks = HierarchyBuilder(_fixed_clock()).build("wb1", quarterly_workbook())
    assert len(chunks) == 13
    assert chunks[0].level == ChunkLevel.WORKBOOK and chunks[0].parent_id is None

    seen = set()
    for ch in chunks:
        if ch.parent_id is not None:
            assert ch.parent_id in seen, "parent must come before child"
        seen.add(ch.id)

    sheets = _by_level(chunks, ChunkLevel.SHEET)
    assert [s.metadata["sheet_name"] for s in sheets] == ["Sales", "Inventory"]
    assert [s.ordinal for s in sheets] == [0, 1]
    sections = _by_level(chunks, ChunkLevel.SECTION)
    assert [s.metadata["section_label"] for s in sections] == ["Q1", "Q2", "Rows 1-3"]


def test_row_text_and_metadata():
    chunks = HierarchyBuilder(_fixed_clock()).build("wb1", quarterly_workbook())
    rows = _by_level(chunks, ChunkLevel.ROW)
    first = rows[0]
    assert first.text == "Region: North; Quarter: Q1; Revenue: 1200"
    assert first.metadata["sheet_name"] == "Sales"
    assert first.metadata["section_label"] == "Q1"
    assert first.metadata["row_number"] == 1
    assert first.metadata["column_headers"] == "Region, Quarter, Revenue"
    assert rows[2].metadata["section_label"] == "Q2"
    assert rows[2].ordinal == 0  # first row of its section


def test_ids_are_stable_and_hashes_ignore_created_at():
    a = HierarchyBuilder(_fixed_clock("2024-01-01T00:00:00+00:00")).build("wb1", quarterly_workbook())
    b = HierarchyBuilder(_fixed_clock("2025-06-30T12:00:00+00:00")).build("wb1", quarterly_workbook())
    assert [c.id for c in a] == [c.id for c in b]
    assert [c.content_hash for c in a] == [c.content_hash for c in b]


def test_same_content_in_other_workbook_shares_hash_not_id():
    a = HierarchyBuilder().build("wb1", quarterly_workbook())
    b = HierarchyBuilder().build("wb2", quarterly_workbook())
    row_a, row_b = _by_level(a, ChunkLevel.ROW)[0], _by_level(b, ChunkLevel.ROW)[0]
    assert row_a.id != row_b.id
    assert row_a.content_hash == row_b.content_hash


def test_sheet_without_hints_gets_one_section():
    wb = ParsedWorkbook(title="T", sheets=[ParsedSheet("S", ["A"], [["1"], ["2"]])])
    chunks = HierarchyBuilder().build("t", wb)
    sections = _by_level(chunks, ChunkLevel.SECTION)
    assert len(sections) == 1
    assert len(_by_level(chunks, ChunkLevel.ROW)) == 2
    assert sections[0].metadata["section_label"] == "Rows 1-2"
    assert all("section_label" not in r.metadata for r in _by_level(chunks, ChunkLevel.ROW))


def test_appended_row_only_touches_sheet_section_and_new_row():
    def book(rows):
        return ParsedWorkbook(title="T", sheets=[ParsedSheet("S", ["A"], rows)])

    old = HierarchyBuilder(_fixed_clock("old")).build("t", book([["1"], ["2"]]))
    new = HierarchyBuilder(_fixed_clock("new")).build("t", book([["1"], ["2"], ["3"]]))
    d = diff_trees({c.id: c for c in old}, new)
    assert [c.text for c in d.added] == ["A: 3"]
    assert sorted(int(c.level) for c in d.updated) == [1, 2]
    assert sorted(c.text for c in d.unchanged if c.level == ChunkLevel.ROW) == ["A: 1", "A: 2"]
    assert not d.removed


def test_empty_sheet_yields_sheet_and_empty_section():
    wb = ParsedWorkbook(title="T", sheets=[ParsedSheet("Empty", ["A", "B"], [])])
    chunks = HierarchyBuilder().build("t", wb)
    assert len(_by_level(chunks, ChunkLevel.SHEET)) == 1
    assert len(_by_level(chunks, ChunkLevel.SECTION)) == 1
    assert _by_level(chunks, ChunkLevel.ROW) == []


def test_rows_before_first_hint_form_leading_section():
    sheet = ParsedSheet("S", ["A"], [["x"], ["y"], ["z"]], sections=[SectionHint(1, "Later")])
    chunks = HierarchyBuilder().build("t", ParsedWorkbook("T", [sheet]))
    labels = [c.metadata["section_label"] for c in _by_level(chunks, ChunkLevel.SECTION)]
    assert labels == ["Rows 1-1", "Later"]


def test_ragged_rows_and_missing_headers():
    sheet = ParsedSheet("S", ["A", ""], [["1", "2", "3"], ["4"]])
    chunks = HierarchyBuilder().build("t", ParsedWorkbook("T", [sheet]))
    rows = _by_level(chunks, ChunkLevel.ROW)
    assert rows[0].text == "A: 1; col_2: 2; col_3: 3"
    assert rows[1].text == "A: 4"


@pytest.mark.parametrize(
    "hints",
    [
        [SectionHint(-1)],
        [SectionHint(3)],
        [SectionHint(0), SectionHint(0)],
    ],
)
def test_malformed_section_hints_raise(hints):
    sheet = ParsedSheet("S", ["A"], [["1"], ["2"], ["3"]], sections=hints)
    with pytest.raises(StructuralError):
        HierarchyBuilder().build("t", ParsedWorkbook("T", [sheet]))


def test_duplicate_or_blank_sheet_names_raise():
    dup = ParsedWorkbook("T", [ParsedSheet("S", ["A"], []), ParsedSheet("S", ["A"], [])])
    with pytest.raises(StructuralError):
        HierarchyBuilder().build("t", dup)
    blank = ParsedWorkbook("T", [ParsedSheet("  ", ["A"], [])])
    with pytest.raises(StructuralError):
        HierarchyBuilder().build("t", blank)


def test_diff_detects_added_updated_removed():
    old = HierarchyBuilder(_fixed_clock("old")).build("wb", quarterly_workbook())
    existing = {c.id: c for c in old}

    changed = quarterly_workbook()
    changed.sheets[0].rows[0][2] = 1300
    changed.sheets = changed.sheets[:1]
    new = HierarchyBuilder(_fixed_clock("new")).build("wb", changed)

    d = diff_trees(existing, new)
    assert not d.added
    updated_levels = sorted(int(c.level) for c in d.updated)
    assert updated_levels == [0, 3]  # workbook text lists sheets; one row changed
    assert len(d.removed) == 5
    assert [int(c.level) for c in d.removed] == sorted((int(c.level) for c in d.removed), reverse=True)
    for c in d.updated:
        assert c.metadata["created_at"] == "old"


def test_arena_ancestors_reach_root_in_three_hops():
    arena = ChunkArena()
    for ch in HierarchyBuilder().build("wb", quarterly_workbook()):
        arena.put(ch)
    for ch in arena.all_chunks():
        chain = arena.ancestors(ch.id)
        assert len(chain) == int(ch.level) <= 3
        if chain:
            assert chain[0].level == ChunkLevel.WORKBOOK
    assert arena.validate() == []


def test_arena_rejects_orphans_and_taken_ordinals():
    chunks = HierarchyBuilder().build("wb", quarterly_workbook())
    arena = ChunkArena()
    with pytest.raises(StructuralError):
        arena.put(chunks[1])  # parent not present yet
    for ch in chunks:
        arena.put(ch)
    impostor = chunks[2].model_copy(update={"id": "x" * 32})
    with pytest.raises(StructuralError):
        arena.put(impostor)
    with pytest.raises(StructuralError):
        arena.remove(chunks[0].id)  # still has children
