import pytest

import sqlitewrap
from sqlitewrap import DataType, ValueType


@pytest.fixture
def people(conn):
    conn.exec(
        """
        CREATE TABLE people(id INTEGER, name TEXT, score REAL, avatar BLOB, note TEXT);
        INSERT INTO people VALUES (1, 'ada', 9.5, x'0102', NULL);
        """
    )
    return conn


def test_column_accessors(people):
    with people.prepare("SELECT id, name, score, avatar, note FROM people") as stmt:
        assert stmt.step()

        assert stmt[0].get_int() == 1
        assert stmt["id"].get_int64() == 1
        assert stmt["name"].get_string() == "ada"
        assert stmt["score"].get_double() == 9.5
        assert stmt["avatar"].get_blob().tobytes() == b"\x01\x02"
        assert stmt["note"].type() is DataType.NULL


def test_column_conversions(people):
    with people.prepare("SELECT id, name, score, avatar FROM people") as stmt:
        assert stmt.step()
        assert int(stmt["id"]) == 1
        assert float(stmt["score"]) == 9.5
        assert str(stmt["name"]) == "ada"
        assert bytes(stmt["avatar"]) == b"\x01\x02"


def test_generic_get(people):
    with people.prepare("SELECT id, name, score, avatar FROM people") as stmt:
        assert stmt.step()
        assert stmt[0].get(ValueType.INT) == 1
        assert stmt[0].get(ValueType.INT64) == 1
        assert stmt[0].get(int) == 1
        assert stmt[1].get(ValueType.TEXT) == "ada"
        assert stmt[1].get(str) == "ada"
        assert stmt[2].get(ValueType.DOUBLE) == 9.5
        assert stmt[2].get(float) == 9.5
        assert stmt[3].get(bytes) == b"\x01\x02"
        blob = stmt[3].get(sqlitewrap.Blob)
        assert isinstance(blob, sqlitewrap.Blob)
        assert len(blob) == 2
        assert stmt[3].get(ValueType.BLOB).tobytes() == b"\x01\x02"


def test_generic_get_rejects_other_types(people):
    with people.prepare("SELECT id FROM people") as stmt:
        assert stmt.step()
        with pytest.raises(TypeError):
            stmt[0].get(list)
        with pytest.raises(TypeError):
            stmt[0].get("int")


def test_loose_coercion(conn):
    with conn.prepare("SELECT '42abc', '3.5xyz', 7, 2.75, NULL, 'text'") as stmt:
        assert stmt.step()
        assert stmt[0].get_int() == 42
        assert stmt[1].get_double() == 3.5
        assert stmt[2].get_string() == "7"
        assert stmt[3].get_int64() == 2
        assert stmt[4].get_string() == ""
        assert stmt[4].get_int() == 0
        assert stmt[5].get_int() == 0
        assert stmt[2].get_blob().tobytes() == b"7"


def test_column_metadata(people):
    with people.prepare("SELECT id AS ident, name FROM people") as stmt:
        assert stmt[0].name() == "ident"
        assert stmt[0].decl_type() == "INTEGER"
        assert stmt.get_column_decl_type("name") == "TEXT"
        assert stmt.get_column_name(1) == "name"


def test_decl_type_of_expression_is_empty(conn):
    with conn.prepare("SELECT 1 + 1") as stmt:
        assert stmt.get_column_decl_type(0) == ""


def test_runtime_types(conn):
    with conn.prepare("SELECT 1, 1.5, 'x', x'00', NULL") as stmt:
        assert stmt.step()
        assert [stmt[i].type() for i in range(5)] == [
            DataType.INTEGER, DataType.FLOAT, DataType.TEXT, DataType.BLOB, DataType.NULL,
        ]
        assert stmt.get_column_type(0) is DataType.INTEGER


def test_origin_metadata(people, column_metadata):
    with people.prepare("SELECT id AS ident FROM people") as stmt:
        if not column_metadata:
            with pytest.raises(sqlitewrap.OtherError, match="column metadata not enabled"):
                stmt[0].table_name()
            return
        assert stmt[0].table_name() == "people"
        assert stmt[0].database_name() == "main"
        assert stmt[0].origin_name() == "id"
        assert stmt.get_column_table_name("ident") == "people"


def test_data_type_labels_round_trip():
    assert str(DataType.INTEGER) == "Integer"
    assert str(DataType.FLOAT) == "Float"
    assert str(DataType.NULL) == "Null"
    for kind in DataType:
        assert DataType.from_label(str(kind)) is kind
    with pytest.raises(ValueError):
        DataType.from_label("Unknown")


def test_blob_view_invalidated_by_step(conn):
    with conn.prepare("SELECT x'abcd' UNION ALL SELECT x'ef'") as stmt:
        assert stmt.step()
        blob = stmt.get_blob(0)
        assert blob.valid
        assert blob.tobytes() == b"\xab\xcd"

        assert stmt.step()
        assert not blob.valid
        with pytest.raises(sqlitewrap.OtherError, match="no longer valid"):
            blob.tobytes()
        assert stmt.get_blob(0).tobytes() == b"\xef"


def test_blob_view_invalidated_by_reset_and_finalize(conn):
    stmt = conn.prepare("SELECT x'01'")
    assert stmt.step()
    blob = stmt.get_blob(0)
    stmt.reset()
    assert not blob.valid

    assert stmt.step()
    blob = stmt.get_blob(0)
    stmt.finalize()
    with pytest.raises(sqlitewrap.OtherError):
        bytes(blob)


def test_null_blob_is_empty(conn):
    with conn.prepare("SELECT NULL") as stmt:
        assert stmt.step()
        blob = stmt.get_blob(0)
        assert len(blob) == 0
        assert blob.tobytes() == b""


def test_bind_live_blob_view(conn):
    conn.exec("CREATE TABLE src(b BLOB); INSERT INTO src VALUES (x'cafe');")
    conn.exec("CREATE TABLE dst(b BLOB)")
    with conn.prepare("SELECT b FROM src") as select, conn.prepare("INSERT INTO dst VALUES (?)") as insert:
        assert select.step()
        insert.bind(1, select.get_blob(0))
        assert insert.step() is False

    with conn.prepare("SELECT b FROM dst") as stmt:
        assert stmt.step()
        assert bytes(stmt[0]) == b"\xca\xfe"


def test_column_accessor_needs_row(conn):
    with conn.prepare("SELECT 1 AS one") as stmt:
        col = stmt["one"]
        assert col.index == 0
        with pytest.raises(sqlitewrap.OtherError):
            int(col)
        assert stmt.step()
        assert int(col) == 1


def test_unknown_column_name_lookup(conn):
    with conn.prepare("SELECT 1 AS one") as stmt:
        with pytest.raises(sqlitewrap.OtherError, match="column not found"):
            stmt["two"]
