from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from typing import Any, Sequence

import sqlitewrap


@dataclasses.dataclass
class RunReport:
    db: str
    scripts: list[str] = dataclasses.field(default_factory=list)
    columns: list[str] = dataclasses.field(default_factory=list)
    rows: list[list[Any]] = dataclasses.field(default_factory=list)


def report_to_dict(report: RunReport) -> dict[str, Any]:
    return {
        "db": report.db,
        "scripts": list(report.scripts),
        "columns": list(report.columns),
        "rows": [[_jsonable(v) for v in row] for row in report.rows],
    }


def write_report_json(report: RunReport, path: str) -> None:
    payload = json.dumps(report_to_dict(report), indent=2, sort_keys=True)
    if path == "-":
        print(payload)
        return
    with open(path, "w", encoding="utf-8") as f:
        f.write(payload)
        f.write("\n")


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return {"_type": "bytes", "hex": value.hex(), "len": len(value)}
    return value


def _parse_param(raw: str) -> int | float | str:
    # Command-line values arrive as text; bind the narrowest type that parses.
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


def _read_value(stmt: sqlitewrap.Statement, index: int) -> Any:
    kind = stmt.get_column_type(index)
    if kind is sqlitewrap.DataType.INTEGER:
        return stmt.get_int64(index)
    if kind is sqlitewrap.DataType.FLOAT:
        return stmt.get_double(index)
    if kind is sqlitewrap.DataType.TEXT:
        return stmt.get_string(index)
    if kind is sqlitewrap.DataType.BLOB:
        return stmt.get_blob(index).tobytes()
    return None


def run_sql(
    db_path: str,
    *,
    scripts: Sequence[str] = (),
    query: str | None = None,
    params: Sequence[str] = (),
    readonly: bool = False,
) -> RunReport:
    """Apply SQL script files to ``db_path`` and optionally run one query.

    Query parameters are bound positionally, after conversion by _parse_param.
    """
    if readonly:
        flags = sqlitewrap.OpenFlags.READONLY
    else:
        flags = sqlitewrap.OpenFlags.READWRITE | sqlitewrap.OpenFlags.CREATE

    report = RunReport(db=db_path)

    with sqlitewrap.Connection(db_path, flags) as conn:
        for path in scripts:
            with open(path, "r", encoding="utf-8") as f:
                conn.exec(f.read())
            report.scripts.append(path)

        if query is not None:
            with conn.prepare(query) as stmt:
                stmt.bind_all(*[_parse_param(p) for p in params])
                report.columns = [stmt.get_column_name(i) for i in range(stmt.column_count())]
                while stmt.step():
                    report.rows.append([_read_value(stmt, i) for i in range(stmt.column_count())])

    return report


def _caret_column(sql: str, offset: int) -> int:
    # The engine reports a UTF-8 byte offset.
    return len(sql.encode("utf-8")[:offset].decode("utf-8", errors="ignore"))


def _print_report(console, report: RunReport) -> None:
    from rich.table import Table

    if report.scripts:
        console.print(f"[green]Applied[/green] {len(report.scripts)} script(s) to {report.db}")
    if not report.columns:
        return

    tbl = Table(show_lines=False)
    for name in report.columns:
        tbl.add_column(name, style="cyan")
    for row in report.rows:
        cells = []
        for value in row:
            if value is None:
                cells.append("[dim]NULL[/dim]")
            elif isinstance(value, bytes):
                cells.append(f"x'{value.hex()}'")
            else:
                cells.append(str(value))
        tbl.add_row(*cells)
    console.print(tbl)
    console.print(f"[dim]{len(report.rows)} row(s)[/dim]")


def main(argv: Sequence[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run SQL scripts and a query against a SQLite database")
    p.add_argument("db_path", help="Path to the SQLite database file (':memory:' for a scratch database)")
    p.add_argument("--script", action="append", default=[], help="SQL script file to execute (repeatable)")
    p.add_argument("--query", default=None, help="Query to run after the scripts; rows are printed")
    p.add_argument("--param", action="append", default=[], help="Positional query parameter (repeatable)")
    p.add_argument("--readonly", action="store_true", help="Open the database read-only")
    p.add_argument(
        "--report-json",
        default=None,
        help="Write a JSON report of the run to this path (use '-' for stdout)",
    )
    p.add_argument("--verbose", action="store_true", help="Log library activity to stderr")
    args = p.parse_args(argv)

    from rich.console import Console

    console = Console(stderr=bool(args.report_json == "-"))

    if args.verbose:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger = logging.getLogger("sqlitewrap")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        console.print(f"[dim]SQLite {sqlitewrap.sqlite_version()}, threadsafe={sqlitewrap.is_threadsafe()}[/dim]")

    try:
        report = run_sql(
            args.db_path,
            scripts=args.script,
            query=args.query,
            params=args.param,
            readonly=bool(args.readonly),
        )
    except sqlitewrap.Error as e:
        console.print(f"[red]{type(e).__name__}[/red]: {e}")
        if isinstance(e, sqlitewrap.SyntaxError) and e.offset >= 0:
            console.print(f"  {e.sql}")
            console.print(f"  {' ' * _caret_column(e.sql, e.offset)}^")
        return 1
    except sqlitewrap.OtherError as e:
        console.print(f"[red]OtherError[/red]: {e}")
        return 1

    _print_report(console, report)

    if args.report_json:
        write_report_json(report, args.report_json)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
