import json
import logging

import pytest

import cli
from workbook_rag.app import WorkbookRetriever, load_config

from helpers import INVENTORY_TSV, SALES_CSV

CONFIG_YAML = """
app:
  index_dir: "{root}/index"
  log_dir: "{root}/logs"
embedding:
  backend: hashing
  dim: 64
  max_wait_ms: 5
  max_attempts: 2
  backoff_initial_s: 0.01
  backoff_max_s: 0.02
retrieval:
  top_k: 4
"""


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(saved[0])
    for h in saved[1]:
        root.addHandler(h)


@pytest.fixture
def setup(tmp_path):
    book = tmp_path / "Quarterly"
    book.mkdir()
    (book / "sales.csv").write_text(SALES_CSV, encoding="utf-8")
    (book / "inventory.tsv").write_text(INVENTORY_TSV, encoding="utf-8")
    cfg = tmp_path / "config.yaml"
    cfg.write_text(CONFIG_YAML.format(root=tmp_path.as_posix()), encoding="utf-8")
    return tmp_path, ["--config", str(cfg), "-q"], book


def _ingest(base, book):
    with pytest.raises(SystemExit) as exc:
        cli.main(base + ["ingest", str(book), "--workbook-id", "quarterly"])
    return exc.value.code


def test_parse_filters_coerces_and_collects():
    assert cli.parse_filters(["sheet_name=Sales", "row_number=2", "sheet_name=Costs"]) == {
        "sheet_name": ["Sales", "Costs"],
        "row_number": 2,
    }
    assert cli.parse_filters(["level=row", "flag=true", "ratio=0.5"]) == {
        "level": "row",
        "flag": True,
        "ratio": 0.5,
    }
    with pytest.raises(SystemExit):
        cli.parse_filters(["no-equals-sign"])


def test_ingest_then_query_and_save_output(setup, capsys):
    root, base, book = setup
    assert _ingest(base, book) == 0
    assert "Ingest success: quarterly" in capsys.readouterr().out
    assert (root / "index" / "meta.json").exists()
    assert (root / "logs" / "ingest.log.jsonl").exists()

    out_file = root / "answer.json"
    cli.main(base + ["query", "Q2 revenue", "--filter", "sheet_name=sales", "--out", str(out_file), "--show-contexts"])
    printed = capsys.readouterr().out
    assert "=== CITATIONS ===" in printed
    assert "=== CONTEXTS ===" in printed

    payload = json.loads(out_file.read_text(encoding="utf-8"))
    assert payload["question"] == "Q2 revenue"
    assert payload["citations"]
    assert all(c["sheet_name"] == "sales" for c in payload["citations"])
    assert len(payload["contexts"]) <= 4
    assert (root / "logs" / "queries.log.jsonl").exists()


def test_markdown_output(setup, capsys):
    root, base, book = setup
    _ingest(base, book)
    target = root / "out" / "answer.md"
    cli.main(base + ["query", "widgets stock", "--out", str(target)])
    text = target.read_text(encoding="utf-8")
    assert text.startswith("# widgets stock")
    assert "## Citations" in text


def test_check_pending_and_remove(setup, capsys):
    root, base, book = setup
    _ingest(base, book)
    capsys.readouterr()

    cli.main(base + ["check"])
    assert "OK" in capsys.readouterr().out

    cli.main(base + ["pending"])
    assert "0 chunk(s) pending" in capsys.readouterr().out

    cli.main(base + ["remove", "quarterly"])
    assert "Removed 12 chunk(s) from quarterly" in capsys.readouterr().out
    cfg = load_config(base[1])
    with WorkbookRetriever.load(cfg.app.index_dir, cfg) as r:
        assert len(r.arena) == 0


def test_invalid_filter_exits_with_usage_code(setup):
    _, base, book = setup
    _ingest(base, book)
    with pytest.raises(SystemExit) as exc:
        cli.main(base + ["query", "revenue", "--filter", "colour=red"])
    assert exc.value.code == 2


def test_missing_index_or_path(setup):
    root, base, _ = setup
    with pytest.raises(SystemExit) as exc:
        cli.main(base + ["check"])
    assert "No index" in str(exc.value.code)
    with pytest.raises(SystemExit) as exc:
        cli.main(base + ["ingest", str(root / "missing.csv")])
    assert exc.value.code == 2
