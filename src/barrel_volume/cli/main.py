from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Optional, Sequence

from ..domain.models import dataset_to_json_obj
from ..logging import get_logger, set_level
from ..orchestrator.parser import JsonValidationError, parse_and_validate_batch
from ..orchestrator.service import BarrelDataService
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _service(ns: argparse.Namespace) -> BarrelDataService:
    return BarrelDataService(root_dir=ns.root or os.getcwd())


def _print_table(columns: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
    widths = [len(c) for c in columns]
    for row in rows:
        for i, text in enumerate(row):
            widths[i] = max(widths[i], len(text))
    print("  ".join(c.ljust(w) for c, w in zip(columns, widths)))
    for row in rows:
        print("  ".join(t.ljust(w) for t, w in zip(row, widths)))


def _handle_analyze(ns: argparse.Namespace) -> int:
    svc = _service(ns)
    outcome = svc.analyze(expand_abs(ns.image))
    if not outcome.ok:
        LOG.error(outcome.message or "Analysis failed.")
        return 1
    batch = outcome.batch or []
    LOG.info(f"Verified batch has {len(batch)} rows")
    if ns.confirm:
        merged = svc.confirm()
        LOG.info(f"Batch merged; dataset now has {len(merged)} rows")
    if ns.output:
        with open(expand_abs(ns.output), "w", encoding="utf-8") as f:
            json.dump(dataset_to_json_obj(batch), f, ensure_ascii=False, indent=2)
        LOG.info(f"Wrote batch to: {ns.output}")
    elif not ns.confirm:
        print(json.dumps(dataset_to_json_obj(batch), ensure_ascii=False, indent=2))
    return 0


def _handle_confirm(ns: argparse.Namespace) -> int:
    try:
        with open(expand_abs(ns.file), "r", encoding="utf-8") as f:
            payload = json.load(f)
        batch = parse_and_validate_batch(payload)
    except (OSError, ValueError) as exc:
        LOG.error(f"Cannot read batch file {ns.file}: {exc}")
        return 1
    except JsonValidationError as exc:
        LOG.error(f"Invalid batch: {exc}")
        return 1
    merged = _service(ns).confirm(batch)
    print(f"Dataset now has {len(merged)} rows")
    return 0


def _handle_show(ns: argparse.Namespace) -> int:
    svc = _service(ns)
    data = svc.dataset
    if not data:
        print("No data has been saved yet.")
        return 0
    columns = svc.columns()
    rows = []
    for row in data:
        out = []
        for column in columns:
            cell = row.get(column)
            if cell is None or cell.value is None:
                out.append("-")
            elif cell.confidence == "high":
                out.append(str(cell.value))
            else:
                out.append(f"{cell.value} ({cell.confidence[0]})")
        rows.append(out)
    _print_table(columns, rows)
    return 0


def _handle_columns(ns: argparse.Namespace) -> int:
    for column in _service(ns).volume_columns():
        print(column)
    return 0


def _handle_calculate(ns: argparse.Namespace) -> int:
    result = _service(ns).calculate(ns.column, ns.height)
    if ns.json:
        print(json.dumps(result.as_dict(), ensure_ascii=False))
    else:
        print(result.display)
        if result.note:
            print(result.note)
    return 0 if result.value is not None else 1


def _handle_edit(ns: argparse.Namespace) -> int:
    try:
        row = _service(ns).edit_cell(ns.row, ns.column, ns.value)
    except IndexError as exc:
        LOG.error(str(exc))
        return 2
    except KeyError:
        LOG.error(f"Unknown column: {ns.column}")
        return 2
    print(json.dumps({ns.column: row[ns.column].value}, ensure_ascii=False))
    return 0


def _handle_export(ns: argparse.Namespace) -> int:
    svc = _service(ns)
    text = svc.export_csv() if ns.format == "csv" else svc.export_json()
    if ns.output:
        with open(expand_abs(ns.output), "w", encoding="utf-8", newline="") as f:
            f.write(text)
        LOG.info(f"Wrote: {ns.output}")
    else:
        sys.stdout.write(text)
    return 0


def _handle_clear(ns: argparse.Namespace) -> int:
    if not ns.yes:
        LOG.error("Refusing to delete all saved data without --yes.")
        return 2
    _service(ns).clear_all()
    return 0


def _handle_runs(ns: argparse.Namespace) -> int:
    for run in _service(ns).runs(ns.limit):
        print(json.dumps(run, ensure_ascii=False))
    return 0


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..orchestrator.frontend.app import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    app = create_app(
        root_dir=ns.root or os.getcwd(),
        static_dir=ns.static_dir,
        allow_origins=allow_origins,
        serve_static=not ns.api_only,
    )
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="barrel-volume",
        description="Digitize barrel volume tables and look up volumes by wet height.",
    )
    parser.add_argument("--root", help="Project root holding var/ (default: current directory)")
    parser.add_argument(
        "--log-level",
        dest="global_log_level",
        help="Override LOG_LEVEL for this run (DEBUG, INFO, WARNING, ...)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Extract and verify a table page with the AI vision model.")
    analyze.add_argument("--image", required=True, help="Path to the scanned page (JPG/PNG)")
    analyze.add_argument("--confirm", action="store_true", help="Merge the verified batch into the dataset")
    analyze.add_argument("--output", help="Write the verified batch JSON here")
    analyze.set_defaults(handler=_handle_analyze)

    confirm = subparsers.add_parser("confirm", help="Merge a reviewed batch JSON file into the dataset.")
    confirm.add_argument("--file", required=True)
    confirm.set_defaults(handler=_handle_confirm)

    show = subparsers.add_parser("show", help="Print the saved dataset.")
    show.set_defaults(handler=_handle_show)

    columns = subparsers.add_parser("columns", help="List barrel configurations (volume columns).")
    columns.set_defaults(handler=_handle_columns)

    calc = subparsers.add_parser("calculate", help="Volume for a wet height in one barrel column.")
    calc.add_argument("--column", required=True)
    calc.add_argument("--height", required=True, help="Wet height, e.g. 25.5")
    calc.add_argument("--json", action="store_true", help="Print the full result as JSON")
    calc.set_defaults(handler=_handle_calculate)

    edit = subparsers.add_parser("edit", help="Correct one saved cell by hand.")
    edit.add_argument("--row", type=int, required=True, help="0-based row index")
    edit.add_argument("--column", required=True)
    edit.add_argument("--value", required=True, help="New value; '-' clears the cell")
    edit.set_defaults(handler=_handle_edit)

    export = subparsers.add_parser("export", help="Export the dataset as CSV or JSON.")
    export.add_argument("--format", choices=["csv", "json"], default="csv")
    export.add_argument("--output")
    export.set_defaults(handler=_handle_export)

    clear = subparsers.add_parser("clear", help="Delete all saved data.")
    clear.add_argument("--yes", action="store_true")
    clear.set_defaults(handler=_handle_clear)

    runs = subparsers.add_parser("runs", help="Show recent analysis runs.")
    runs.add_argument("--limit", type=int, default=20)
    runs.set_defaults(handler=_handle_runs)

    serve = subparsers.add_parser("serve", help="Run the JSON API (and optional static frontend).")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument("--static-dir", help="Override static frontend directory relative to project root")
    serve.add_argument("--api-only", action="store_true", help="Serve JSON API without static frontend")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")
    args = build_parser().parse_args(provided)
    if args.global_log_level:
        set_level(args.global_log_level)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
