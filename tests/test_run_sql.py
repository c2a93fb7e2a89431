import json

import pytest

import sqlitewrap
from sqlitewrap.tools.run_sql import _caret_column, main, run_sql, write_report_json


def _write_schema(tmp_path):
    script = tmp_path / "schema.sql"
    script.write_text(
        """
        CREATE TABLE items(id INTEGER, name TEXT, price REAL, payload BLOB);
        INSERT INTO items VALUES (1, 'apple', 0.5, x'00ff');
        INSERT INTO items VALUES (2, 'pear', 0.75, NULL);
        INSERT INTO items VALUES (3, 'plum', 1.25, NULL);
        """,
        encoding="utf-8",
    )
    return str(script)


def test_run_sql_script_and_query(tmp_path, db_path):
    script = _write_schema(tmp_path)

    report = run_sql(
        db_path,
        scripts=[script],
        query="SELECT id, name, price, payload FROM items WHERE id <= ? ORDER BY id",
        params=["2"],
    )

    assert report.scripts == [script]
    assert report.columns == ["id", "name", "price", "payload"]
    assert report.rows == [
        [1, "apple", 0.5, b"\x00\xff"],
        [2, "pear", 0.75, None],
    ]


def test_run_sql_param_parsing(db_path):
    report = run_sql(db_path, query="SELECT ?, ?, ?", params=["7", "2.5", "seven"])
    assert report.rows == [[7, 2.5, "seven"]]


def test_run_sql_readonly(tmp_path, db_path):
    run_sql(db_path, scripts=[_write_schema(tmp_path)])

    report = run_sql(db_path, query="SELECT count(*) AS n FROM items", readonly=True)
    assert report.columns == ["n"]
    assert report.rows == [[3]]

    with pytest.raises(sqlitewrap.Error):
        run_sql(db_path, query="DELETE FROM items", readonly=True)


def test_write_report_json(tmp_path, db_path):
    report = run_sql(db_path, query="SELECT x'0a0b' AS b, 1 AS i")
    out = tmp_path / "report.json"
    write_report_json(report, str(out))

    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["db"] == db_path
    assert payload["columns"] == ["b", "i"]
    assert payload["rows"] == [[{"_type": "bytes", "hex": "0a0b", "len": 2}, 1]]


def test_main_success(tmp_path, db_path):
    script = _write_schema(tmp_path)
    out = tmp_path / "report.json"

    rc = main([db_path, "--script", script, "--query", "SELECT name FROM items ORDER BY id", "--report-json", str(out)])

    assert rc == 0
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["rows"] == [["apple"], ["pear"], ["plum"]]


def test_main_report_to_stdout(db_path, capsys):
    rc = main([db_path, "--query", "SELECT 1 AS one", "--report-json", "-"])
    assert rc == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["rows"] == [[1]]


def test_main_reports_engine_errors(db_path):
    assert main([db_path, "--query", "SELEC 1"]) == 1


def test_main_reports_wrapper_errors(db_path):
    # Comment-only SQL compiles to an empty statement.
    assert main([db_path, "--query", "-- nothing", "--param", "1"]) == 1


def test_caret_column_counts_characters():
    sql = "SELECT 'é', FROM t"
    byte_offset = len("SELECT 'é', ".encode("utf-8"))
    assert byte_offset == 13
    assert _caret_column(sql, byte_offset) == sql.index("FROM")
    assert _caret_column("SELEC 1", 0) == 0
    # An offset inside a multi-byte character points at that character.
    assert _caret_column("'é'", 2) == 1


def test_main_caret_under_non_ascii_sql(db_path, capsys):
    sql = "SELECT 'é', FROM t"
    with sqlitewrap.Connection(db_path) as conn:
        with pytest.raises(sqlitewrap.Error) as excinfo:
            conn.prepare(sql)
    err = excinfo.value
    if not isinstance(err, sqlitewrap.SyntaxError):
        pytest.skip("linked SQLite does not report error offsets")

    assert main([db_path, "--query", sql]) == 1

    lines = capsys.readouterr().out.splitlines()
    caret = next(line for line in lines if line.strip() == "^")
    column = len(sql.encode("utf-8")[: err.offset].decode("utf-8", errors="ignore"))
    assert caret.index("^") == 2 + column
