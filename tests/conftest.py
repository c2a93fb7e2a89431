import pytest

import sqlitewrap
from sqlitewrap.native import load_library, has_column_metadata


@pytest.fixture
def conn():
    c = sqlitewrap.Connection(":memory:")
    yield c
    c.close()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
def column_metadata():
    return has_column_metadata(load_library())
