import math
import re
from datetime import date, datetime
from typing import Any

BULLETS = ["•", "◦", "‣", "▪", "▸", "►", "●", "○", "■", "□", "·"]


def normalize_text(s: str) -> str:
    if not s:
        return ""
    s = s.replace("\r\n", "\n").replace("\r", "\n")
    for b in BULLETS:
        s = s.replace(b, "- ")
    s = s.replace("\u00a0", " ")  # nbsp -> space
    # Cells are single-line in chunk text
    s = re.sub(r"\s*\n\s*", " ", s)
    s = re.sub(r"[ \t]{2,}", " ", s)
    return s.strip()


def normalize_cell(value: Any) -> str:
    """Render one cell as display text. None/NaN become empty."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return normalize_text(str(value))


def normalize_header(value: Any, position: int) -> str:
    text = normalize_cell(value)
    return text or f"col_{position + 1}"
