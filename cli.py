#!/usr/bin/env python3
import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from workbook_rag.app import WorkbookRetriever, ingest_path, load_config, query_text
from workbook_rag.errors import IntegrityError, InvalidQueryError, StructuralError, WorkbookRagError
from workbook_rag.logging_utils import setup_logging
from workbook_rag.utils.output import write_output

logger = logging.getLogger(__name__)


def _coerce(value: str) -> Any:
    """--filter values: ints and floats become numbers, true/false booleans."""
    low = value.lower()
    if low in {"true", "false"}:
        return low == "true"
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def parse_filters(items: List[str]) -> Dict[str, Any]:
    """key=value pairs; repeating a key builds an any-of list."""
    out: Dict[str, Any] = {}
    for item in items or []:
        if "=" not in item:
            raise SystemExit(f"Invalid --filter {item!r}; expected key=value")
        key, value = item.split("=", 1)
        key, val = key.strip(), _coerce(value.strip())
        if key in out:
            prev = out[key]
            out[key] = (prev if isinstance(prev, list) else [prev]) + [val]
        else:
            out[key] = val
    return out


def _open_index(cfg) -> WorkbookRetriever:
    index_dir = Path(cfg.app.index_dir)
    if not (index_dir / "meta.json").exists():
        raise SystemExit(f"No index at {index_dir.resolve()}; run `ingest` first.")
    return WorkbookRetriever.load(index_dir, cfg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workbook-rag",
        description="Hierarchical hybrid retrieval over spreadsheet workbooks.",
    )
    parser.add_argument("--config", type=str, default="config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable DEBUG logs (to stderr).")
    parser.add_argument("--quiet", "-q", action="store_true", help="Reduce logs to WARN and above.")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines (stderr).")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_ing = sub.add_parser("ingest", help="Ingest a CSV/TSV workbook (file or folder of sheets)")
    p_ing.add_argument("path", type=str)
    p_ing.add_argument("--workbook-id", type=str, default=None, help="Defaults to the file/folder name")

    p_q = sub.add_parser("query", help="Query the index")
    p_q.add_argument("question", type=str)
    p_q.add_argument("--k", type=int, default=None, help="Override top-k (default from config)")
    p_q.add_argument(
        "--filter",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Metadata filter, e.g. sheet_name=Sales (repeat a key for any-of)",
    )
    p_q.add_argument("--vector-weight", type=float, default=None)
    p_q.add_argument("--keyword-weight", type=float, default=None)
    p_q.add_argument("--rerank", action="store_true", default=None, help="Re-rank the fused candidates")
    p_q.add_argument("--max-chars", type=int, default=1500, help="Context budget in characters")
    p_q.add_argument("--show-contexts", action="store_true", help="Print every retrieved chunk")
    p_q.add_argument("--out", type=str, default=None, help="Write result to a file (.json/.md/.txt)")
    p_q.add_argument("--format", type=str, default=None, choices=["json", "md", "txt"])

    p_p = sub.add_parser("pending", help="List chunks still waiting for an embedding")
    p_p.add_argument("--retry", action="store_true", help="Try to embed them now")

    p_rm = sub.add_parser("remove", help="Remove a workbook and all of its chunks")
    p_rm.add_argument("workbook_id", type=str)

    sub.add_parser("check", help="Verify index integrity")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose and args.quiet:
        print("Cannot use --verbose and --quiet together.", file=sys.stderr)
        sys.exit(2)
    level = "DEBUG" if args.verbose else "WARNING" if args.quiet else None
    setup_logging(level=level, json_logs=args.log_json)

    cfg = load_config(args.config)
    logger.debug("CLI args parsed: %s", vars(args))

    try:
        if args.cmd == "ingest":
            report = ingest_path(Path(args.path), cfg, workbook_id=args.workbook_id)
            print(
                f"Ingest {report.status}: {report.workbook_id} "
                f"(+{len(report.added)} ~{len(report.updated)} ={len(report.unchanged)} "
                f"-{len(report.removed)}, pending {len(report.pending_ids)})"
            )
            print(f"Index dir: {Path(cfg.app.index_dir).resolve()}")
            sys.exit(0 if report.status != "failure" else 1)

        elif args.cmd == "query":
            ans = query_text(
                args.question,
                cfg,
                top_k=args.k,
                filters=parse_filters(args.filter),
                vector_weight=args.vector_weight,
                keyword_weight=args.keyword_weight,
                rerank=args.rerank,
                max_chars=args.max_chars,
            )
            if args.out:
                target = write_output(ans, args.out, fmt=args.format)
                print(f"[saved] {target}")

            print("\n=== CONTEXT ===")
            print((ans.get("answer") or "").strip())
            print("\n=== CITATIONS ===")
            for c in ans.get("citations", []):
                where = " > ".join(
                    str(c[k]) for k in ("workbook_title", "sheet_name", "section_label") if c.get(k)
                )
                row = f" | Row {c['row_number']}" if c.get("row_number") is not None else ""
                print(f"- {where}{row}")
            if ans.get("partial"):
                print("\n[partial] " + "; ".join(ans.get("partial_reasons") or []))
            if args.show_contexts:
                print("\n=== CONTEXTS ===")
                for i, ctx in enumerate(ans.get("contexts", []), start=1):
                    print(f"[{i}] {ctx['heading_path']} | {ctx['level']} | score={ctx['score']:.3f}")
                    print(ctx["text"])
                    print("---")

        elif args.cmd == "pending":
            with _open_index(cfg) as retriever:
                if args.retry:
                    still = retriever.retry_pending()
                    retriever.save()
                else:
                    still = retriever.pending_ids()
            print(f"{len(still)} chunk(s) pending")
            for cid in still:
                print(f"- {cid}")

        elif args.cmd == "remove":
            with _open_index(cfg) as retriever:
                removed = retriever.remove_workbook(args.workbook_id)
                retriever.save()
            print(f"Removed {len(removed)} chunk(s) from {args.workbook_id}")

        elif args.cmd == "check":
            with _open_index(cfg) as retriever:
                problems = retriever.check_integrity()
                stats = retriever.stats()
            print(", ".join(f"{k}={v}" for k, v in sorted(stats.items())))
            if problems:
                print(f"{len(problems)} problem(s); rebuild recommended:")
                for p in problems:
                    print(f"- {p}")
                sys.exit(1)
            print("OK")

    except FileNotFoundError as e:
        logger.error("%s", e)
        sys.exit(2)
    except IntegrityError as e:
        logger.error("Index integrity error: %s (rebuild recommended)", e)
        sys.exit(1)
    except (StructuralError, InvalidQueryError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        sys.exit(2)
    except WorkbookRagError as e:
        logger.exception("%s failed: %s", args.cmd, e)
        sys.exit(2)


if __name__ == "__main__":
    main()
