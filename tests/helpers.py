"""Test doubles and sample workbooks shared across the test modules."""

import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

from workbook_rag.config import AppConfig
from workbook_rag.embed.providers import HashingEmbedder
from workbook_rag.ingest.parsed import ParsedSheet, ParsedWorkbook, SectionHint


class CountingEmbedder:
    """Hashing embedder that records every provider call."""

    def __init__(self, dim: int = 64):
        self.inner = HashingEmbedder(dim=dim)
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    @property
    def texts(self) -> List[str]:
        return [t for batch in self.calls for t in batch]

    def embed(self, texts: Sequence[str]):
        with self._lock:
            self.calls.append(list(texts))
        return self.inner.embed(texts)


class FailingEmbedder:
    def __init__(self):
        self.calls = 0

    def embed(self, texts):
        self.calls += 1
        raise ConnectionError("embedding service unreachable")


class FlakyEmbedder(CountingEmbedder):
    """Fails the first `failures` calls, then behaves."""

    def __init__(self, failures: int, dim: int = 64):
        super().__init__(dim)
        self.failures = failures
        self.attempts = 0

    def embed(self, texts):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TimeoutError("transient")
        return super().embed(texts)


class SelectiveEmbedder(CountingEmbedder):
    """Refuses texts containing `poison` until `healed` is set."""

    def __init__(self, poison: str, dim: int = 64):
        super().__init__(dim)
        self.poison = poison
        self.healed = False

    def embed(self, texts):
        if not self.healed and any(self.poison in t for t in texts):
            raise RuntimeError(f"cannot embed text containing {self.poison!r}")
        return super().embed(texts)


class SlowEmbedder(CountingEmbedder):
    def __init__(self, delay: float, dim: int = 64):
        super().__init__(dim)
        self.delay = delay

    def embed(self, texts):
        time.sleep(self.delay)
        return super().embed(texts)


class ConstantEmbedder:
    """Same unit vector for every text, so only keyword scores separate chunks."""

    def __init__(self, dim: int = 64):
        self.dim = dim

    def embed(self, texts):
        return [[1.0] + [0.0] * (self.dim - 1) for _ in texts]


class BrokenScorer:
    enabled = True

    def score_many(self, query, texts):
        raise RuntimeError("model crashed")


class SlowScorer:
    enabled = True

    def __init__(self, delay: float):
        self.delay = delay

    def score_many(self, query, texts):
        time.sleep(self.delay)
        return [1.0] * len(texts)


def sales_sheet() -> ParsedSheet:
    return ParsedSheet(
        name="Sales",
        headers=["Region", "Quarter", "Revenue"],
        rows=[
            ["North", "Q1", 1200],
            ["South", "Q1", 900],
            ["North", "Q2", 1500],
            ["South", "Q2", 1100],
        ],
        sections=[SectionHint(0, "Q1"), SectionHint(2, "Q2")],
    )


def inventory_sheet() -> ParsedSheet:
    return ParsedSheet(
        name="Inventory",
        headers=["Item", "Stock", "Warehouse"],
        rows=[
            ["Widgets", 40, "East"],
            ["Gadgets", 12, "West"],
            ["Q1 revenue binder", 5, "East"],
        ],
    )


def quarterly_workbook(with_inventory: bool = True) -> ParsedWorkbook:
    sheets = [sales_sheet()]
    if with_inventory:
        sheets.append(inventory_sheet())
    return ParsedWorkbook(title="Quarterly", sheets=sheets)


def hr_workbook() -> ParsedWorkbook:
    return ParsedWorkbook(
        title="Staff",
        sheets=[
            ParsedSheet(
                name="People",
                headers=["Name", "Team"],
                rows=[["Ada", "Platform"], ["Grace", "Compilers"], ["Linus", "Kernel"]],
            )
        ],
    )


def make_config(tmp_path: Optional[Path] = None, **overrides) -> AppConfig:
    """Small timings so retry and timeout paths finish quickly."""
    raw = {
        "embedding": {
            "backend": "hashing",
            "dim": 64,
            "batch_size": 8,
            "max_wait_ms": 5,
            "max_attempts": 2,
            "backoff_initial_s": 0.01,
            "backoff_max_s": 0.02,
            "timeout_s": 2.0,
            "ingest_timeout_s": 10.0,
        },
        "retrieval": {"query_timeout_s": 5.0},
        "reranker": {"enabled": False, "timeout_s": 2.0},
    }
    if tmp_path is not None:
        raw["app"] = {"index_dir": str(tmp_path / "index"), "log_dir": str(tmp_path / "logs")}
    for section, values in overrides.items():
        raw.setdefault(section, {}).update(values)
    return AppConfig.model_validate(raw)


SALES_CSV = """Region,Quarter,Revenue
North,Q1,1200
South,Q1,900

Q2 totals
North,Q2,1500
South,Q2,1100
"""

INVENTORY_TSV = "Item\tStock\tWarehouse\nWidgets\t40\tEast\nGadgets\t12\tWest\n"
