import logging

import pytest
from pydantic import ValidationError

from workbook_rag.config import AppConfig, load_config
from workbook_rag.logging_utils import coerce_level, setup_logging
from workbook_rag.utils.log import JsonlLog


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg == AppConfig()
    assert load_config(None).retrieval.bm25_variant == "plus"


def test_yaml_overrides_only_what_it_names(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text(
        "retrieval:\n  top_k: 3\n  normalization: zscore\nreranker:\n  enabled: true\n  backend: overlap\n",
        encoding="utf-8",
    )
    cfg = load_config(p)
    assert cfg.retrieval.top_k == 3
    assert cfg.retrieval.normalization == "zscore"
    assert cfg.retrieval.vector_weight == 0.5
    assert cfg.reranker.enabled and cfg.reranker.backend == "overlap"
    assert cfg.embedding.backend == "hashing"


def test_empty_yaml_is_defaults(tmp_path):
    p = tmp_path / "config.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config(p) == AppConfig()


@pytest.mark.parametrize(
    "raw",
    [
        {"embedding": {"backend": "word2vec"}},
        {"retrieval": {"top_k": 0}},
        {"retrieval": {"bm25_variant": "bm11"}},
        {"concurrency": {"query_workers": 0}},
    ],
)
def test_invalid_settings_are_rejected(raw):
    with pytest.raises(ValidationError):
        AppConfig.model_validate(raw)


def test_coerce_level():
    assert coerce_level("debug") == logging.DEBUG
    assert coerce_level(logging.ERROR) == logging.ERROR
    assert coerce_level("10") == 10
    assert coerce_level("chatty") == logging.INFO
    assert coerce_level(None) == logging.INFO


def test_setup_logging_env_level(monkeypatch):
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    try:
        monkeypatch.setenv("LOG_LEVEL", "ERROR")
        setup_logging()
        assert root.level == logging.ERROR
        setup_logging(level="DEBUG", json_logs=True)
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert logging.getLogger("urllib3").level == logging.WARNING
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
        root.setLevel(saved[0])
        for h in saved[1]:
            root.addHandler(h)


def test_jsonl_log_appends_records(tmp_path):
    log = JsonlLog(tmp_path / "logs" / "events.jsonl")
    log.write({"event": "ingest", "n": 1})
    log.write({"event": "query"})
    lines = (tmp_path / "logs" / "events.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert '"event": "ingest"' in lines[0] and '"ts"' in lines[0]
