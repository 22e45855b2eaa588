from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional


def infer_format(out_path: Optional[str], fmt: Optional[str]) -> str:
    if fmt:
        return fmt.lower()
    if out_path:
        ext = Path(out_path).suffix.lower().lstrip(".")
        if ext in {"json", "md", "txt"}:
            return ext
    return "json"


def _cite_line(c: Dict[str, Any]) -> str:
    parts = [str(c.get("workbook_title") or c.get("workbook_id") or "?")]
    for key in ("sheet_name", "section_label"):
        if c.get(key):
            parts.append(str(c[key]))
    if c.get("row_number") is not None:
        parts.append(f"Row {c['row_number']}")
    return " > ".join(parts)


def as_markdown(ans: Dict[str, Any]) -> str:
    lines: List[str] = [f"# {ans.get('question', '')}\n"]
    answer = (ans.get("answer") or "").strip()
    if answer:
        lines += [answer, ""]
    cites = ans.get("citations") or []
    if cites:
        lines.append("## Citations")
        lines += [f"- {_cite_line(c)} (`{c.get('chunk_id', '')}`)" for c in cites]
        lines.append("")
    if ans.get("partial"):
        lines.append("## Partial result")
        lines += [f"- {r}" for r in ans.get("partial_reasons") or []]
    return "\n".join(lines).strip() + "\n"


def as_text(ans: Dict[str, Any]) -> str:
    lines: List[str] = [f"QUESTION: {ans.get('question', '')}", "", (ans.get("answer") or "").strip(), ""]
    cites = ans.get("citations") or []
    if cites:
        lines.append("CITATIONS:")
        lines += [f"- {_cite_line(c)}" for c in cites]
        lines.append("")
    if ans.get("partial"):
        lines.append("PARTIAL: " + "; ".join(ans.get("partial_reasons") or []))
    return "\n".join(lines).strip() + "\n"


def write_output(payload: Dict[str, Any], out_path: str, fmt: Optional[str] = None) -> Path:
    fmt2 = infer_format(out_path, fmt)
    target = Path(out_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if fmt2 == "json":
        target.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    elif fmt2 == "md":
        target.write_text(as_markdown(payload), encoding="utf-8")
    elif fmt2 == "txt":
        target.write_text(as_text(payload), encoding="utf-8")
    else:
        raise ValueError(f"Unsupported format: {fmt2}")
    return target
