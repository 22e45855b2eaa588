import sys
from pathlib import Path

import pytest

# Repo root = one level above tests/
REPO_ROOT = Path(__file__).resolve().parents[1]

# Ensure repo root is on sys.path so `workbook_rag` and `cli` import without install.
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from workbook_rag.app import WorkbookRetriever  # noqa: E402

from helpers import CountingEmbedder, make_config  # noqa: E402


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def embedder():
    return CountingEmbedder(dim=64)


@pytest.fixture
def retriever(config, embedder):
    r = WorkbookRetriever(config, embedder=embedder)
    yield r
    r.close()
