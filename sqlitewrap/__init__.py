from .native import (
    load_library, has_error_offset, has_column_metadata as _lib_has_column_metadata,
    SQLITE_OK, SQLITE_BUSY, SQLITE_MISUSE, SQLITE_ROW, SQLITE_DONE,
    SQLITE_INTEGER, SQLITE_FLOAT, SQLITE_TEXT, SQLITE_BLOB, SQLITE_NULL,
    SQLITE_OPEN_READONLY, SQLITE_OPEN_READWRITE, SQLITE_OPEN_CREATE, SQLITE_OPEN_URI,
    SQLITE_OPEN_MEMORY, SQLITE_OPEN_NOMUTEX, SQLITE_OPEN_FULLMUTEX, SQLITE_OPEN_SHAREDCACHE,
    SQLITE_OPEN_PRIVATECACHE, SQLITE_OPEN_NOFOLLOW,
    SQLITE_PREPARE_PERSISTENT, SQLITE_CONFIG_SERIALIZED, SQLITE_TRANSIENT,
)
import ctypes
import enum
import logging
import os
import threading
import weakref

log = logging.getLogger(__name__)

INT32_MIN, INT32_MAX = -(2 ** 31), 2 ** 31 - 1
INT64_MIN, INT64_MAX = -(2 ** 63), 2 ** 63 - 1


# Exceptions
class Error(Exception):
    """A failure reported by the engine.

    ``message`` is the wrapper's context, ``sqlite_errmsg`` the engine's own
    text, ``code``/``extended_code`` the primary and extended result codes.
    """

    def __init__(self, message, sqlite_errmsg, code, extended_code):
        prefix = f"{message}, " if message else ""
        super().__init__(f"{prefix}SQLite error ({code},{extended_code}): {sqlite_errmsg}")
        self.message = message
        self.sqlite_errmsg = sqlite_errmsg
        self.code = code
        self.extended_code = extended_code


class SyntaxError(Error):
    """Error with a byte offset into the SQL text that caused it."""

    def __init__(self, message, sqlite_errmsg, code, extended_code, sql, offset=-1):
        super().__init__(message, sqlite_errmsg, code, extended_code)
        self.sql = sql
        self.offset = offset


class BusyError(Error):
    pass


class MisuseError(Error):
    pass


class OtherError(Exception):
    """Misuse detected by the wrapper itself, never by the engine."""


def _decode(raw):
    # Be defensive: engine strings should be UTF-8, but don't crash if not.
    return raw.decode("utf-8", errors="replace") if raw else ""


def _raise_error(db_handle, message, *, sql=None):
    # The engine's "last error" is overwritten by the next call on the
    # connection, so it has to be read right where the failure happened.
    lib = load_library()
    code = lib.sqlite3_errcode(db_handle)
    extended_code = lib.sqlite3_extended_errcode(db_handle)
    errmsg = _decode(lib.sqlite3_errmsg(db_handle))
    offset = -1
    if sql and has_error_offset(lib):
        offset = lib.sqlite3_error_offset(db_handle)

    if offset > -1:
        raise SyntaxError(message, errmsg, code, extended_code, sql, offset)
    elif code == SQLITE_BUSY:
        raise BusyError(message, errmsg, code, extended_code)
    elif code == SQLITE_MISUSE:
        raise MisuseError(message, errmsg, code, extended_code)
    else:
        raise Error(message, errmsg, code, extended_code)


def _no_copy(self, *args):
    raise TypeError(f"{type(self).__name__} objects own a native handle and cannot be copied")


# Value model
class DataType(enum.Enum):
    INTEGER = "Integer"
    FLOAT = "Float"
    TEXT = "Text"
    BLOB = "Blob"
    NULL = "Null"

    def __str__(self):
        return self.value

    @classmethod
    def from_label(cls, label):
        return cls(label)


_NATIVE_TYPES = {
    SQLITE_INTEGER: DataType.INTEGER,
    SQLITE_FLOAT: DataType.FLOAT,
    SQLITE_TEXT: DataType.TEXT,
    SQLITE_BLOB: DataType.BLOB,
    SQLITE_NULL: DataType.NULL,
}


class ValueType(enum.Enum):
    """The closed set of typed getters; each value names its Statement getter."""

    INT = "get_int"
    INT64 = "get_int64"
    DOUBLE = "get_double"
    TEXT = "get_string"
    BLOB = "get_blob"


class Blob:
    """View of a blob column of the current row.

    Holds the engine's pointer, so it only stays readable until the owning
    statement steps, resets or is finalized; after that ``tobytes()`` raises
    OtherError instead of touching freed memory.
    """

    __slots__ = ("_statement", "_generation", "address", "size")

    def __init__(self, statement, generation, address, size):
        self._statement = weakref.ref(statement)
        self._generation = generation
        self.address = address
        self.size = size

    @property
    def valid(self):
        statement = self._statement()
        return (
            statement is not None
            and statement._has_row
            and statement._row_generation == self._generation
        )

    def tobytes(self):
        if not self.valid:
            raise OtherError("blob view is no longer valid, the statement has moved past its row")
        if not self.address or self.size <= 0:
            return b""
        return ctypes.string_at(self.address, self.size)

    __bytes__ = tobytes

    def __len__(self):
        return self.size

    def __repr__(self):
        return f"Blob(size={self.size}, valid={self.valid})"


# Open flags. Bits are the wrapper's own; _to_native_flags maps them 1:1.
class OpenFlags(enum.IntFlag):
    NONE = 0
    READONLY = 1 << 0
    READWRITE = 1 << 1
    CREATE = 1 << 2
    URI = 1 << 3
    MEMORY = 1 << 4
    NOMUTEX = 1 << 5
    FULLMUTEX = 1 << 6
    SHAREDCACHE = 1 << 7
    PRIVATECACHE = 1 << 8
    NOFOLLOW = 1 << 9


_NATIVE_OPEN_FLAGS = {
    OpenFlags.READONLY: SQLITE_OPEN_READONLY,
    OpenFlags.READWRITE: SQLITE_OPEN_READWRITE,
    OpenFlags.CREATE: SQLITE_OPEN_CREATE,
    OpenFlags.URI: SQLITE_OPEN_URI,
    OpenFlags.MEMORY: SQLITE_OPEN_MEMORY,
    OpenFlags.NOMUTEX: SQLITE_OPEN_NOMUTEX,
    OpenFlags.FULLMUTEX: SQLITE_OPEN_FULLMUTEX,
    OpenFlags.SHAREDCACHE: SQLITE_OPEN_SHAREDCACHE,
    OpenFlags.PRIVATECACHE: SQLITE_OPEN_PRIVATECACHE,
    OpenFlags.NOFOLLOW: SQLITE_OPEN_NOFOLLOW,
}

DEFAULT_OPEN_FLAGS = OpenFlags.READWRITE | OpenFlags.CREATE


def _to_native_flags(flags):
    native = 0
    for flag, bit in _NATIVE_OPEN_FLAGS.items():
        if flags & flag:
            native |= bit
    return native


# Global engine configuration
_UNSET = object()
_config_lock = threading.Lock()
_config_result = _UNSET


def sqlite_version():
    return _decode(load_library().sqlite3_libversion())


def is_threadsafe():
    return load_library().sqlite3_threadsafe() != 0


def configure_serialized():
    """Switch the engine to serialized threading mode.

    Runs at most once per process; later calls return the first outcome.
    Must happen before any connection is opened. Returns None on success or
    an ``Error`` (not raised) so the caller decides how fatal it is.
    """
    global _config_result
    with _config_lock:
        if _config_result is _UNSET:
            lib = load_library()
            rc = lib.sqlite3_config(SQLITE_CONFIG_SERIALIZED)
            if rc == SQLITE_OK:
                _config_result = None
            else:
                _config_result = Error(
                    "failed to configure SQLite for serialized threading mode",
                    _decode(lib.sqlite3_errstr(rc)),
                    rc,
                    rc,
                )
            log.debug("serialized threading mode configured: rc=%d", rc)
        return _config_result


class Parameter:
    """A bind slot of a statement, addressed by its 1-based index."""

    __slots__ = ("_statement", "index")

    def __init__(self, statement, index):
        self._statement = statement
        self.index = index

    @property
    def name(self):
        return self._statement.get_param_name(self.index)

    def bind(self, value):
        self._statement.bind(self.index, value)

    def __repr__(self):
        return f"Parameter(index={self.index})"


class Column:
    """Non-owning accessor for one column of a statement's current row.

    Only valid while the statement is alive and has not stepped past the
    row; every method delegates to the statement at ``index``.
    """

    __slots__ = ("_statement", "index")

    def __init__(self, statement, index):
        self._statement = statement
        self.index = index

    def get_int(self):
        return self._statement.get_int(self.index)

    def get_int64(self):
        return self._statement.get_int64(self.index)

    def get_double(self):
        return self._statement.get_double(self.index)

    def get_string(self):
        return self._statement.get_string(self.index)

    def get_blob(self):
        return self._statement.get_blob(self.index)

    def get(self, kind):
        if kind is bytes:
            return self.get_blob().tobytes()
        kind = _PYTHON_VALUE_TYPES.get(kind, kind)
        if not isinstance(kind, ValueType):
            raise TypeError(f"unsupported column value type: {kind!r}")
        return getattr(self._statement, kind.value)(self.index)

    def __int__(self):
        return self.get_int64()

    def __float__(self):
        return self.get_double()

    def __str__(self):
        return self.get_string()

    def __bytes__(self):
        return self.get_blob().tobytes()

    def type(self):
        return self._statement.get_column_type(self.index)

    def decl_type(self):
        return self._statement.get_column_decl_type(self.index)

    def name(self):
        return self._statement.get_column_name(self.index)

    def table_name(self):
        return self._statement.get_column_table_name(self.index)

    def database_name(self):
        return self._statement.get_column_database_name(self.index)

    def origin_name(self):
        return self._statement.get_column_origin_name(self.index)

    def __repr__(self):
        return f"Column(index={self.index})"


_PYTHON_VALUE_TYPES = {
    int: ValueType.INT64,
    float: ValueType.DOUBLE,
    str: ValueType.TEXT,
    Blob: ValueType.BLOB,
}


class Statement:
    """A compiled statement: bind, step, read columns, reset, finalize.

    Must be finalized before its connection is closed. That ordering is the
    caller's responsibility and is not tracked here.
    """

    def __init__(self, db=None, sql=None, persistent=False):
        self._stmt = None
        self._lib = load_library()
        self._column_indices = {}
        self._has_row = False
        self._row_generation = 0
        self._step_failed = False
        self.sql = sql
        if db is not None:
            self._prepare(db, sql, persistent)

    def _prepare(self, db, sql, persistent):
        encoded = sql.encode("utf-8")
        handle = ctypes.c_void_p()
        prepare_flags = SQLITE_PREPARE_PERSISTENT if persistent else 0
        res = self._lib.sqlite3_prepare_v3(db, encoded, len(encoded), prepare_flags, ctypes.byref(handle), None)
        if res != SQLITE_OK:
            _raise_error(db, "failed to prepare statement", sql=sql)
        # Empty or comment-only SQL compiles to no statement at all.
        self._stmt = handle.value
        if self._stmt:
            self._initialize_column_indices()

    def _initialize_column_indices(self):
        # Duplicate names: the last column wins.
        for i in range(self._lib.sqlite3_column_count(self._stmt)):
            name = self._lib.sqlite3_column_name(self._stmt, i)
            if name is not None:
                self._column_indices[_decode(name)] = i

    def _ensure(self):
        if not self._stmt:
            raise OtherError("SQLite statement not initialized")

    def _ensure_row(self, index):
        self._ensure()
        if not self._has_row:
            raise OtherError("no result row available, step() has not returned a row")
        self._check_column(index)

    def _check_column(self, index):
        if not 0 <= index < self._lib.sqlite3_column_count(self._stmt):
            raise OtherError(f"column index out of range: {index}")

    def _invalidate_row(self):
        self._has_row = False
        self._row_generation += 1

    def _db_handle(self):
        return self._lib.sqlite3_db_handle(self._stmt)

    def _check(self, res, message):
        if res != SQLITE_OK:
            _raise_error(self._db_handle(), message)

    def _repeats_step_failure(self, res):
        # reset()/finalize() hand back the code of a failed step() a second
        # time; that failure was already raised by step().
        step_failed, self._step_failed = self._step_failed, False
        if res != SQLITE_OK and step_failed:
            log.debug("ignoring repeated step failure code %d", res)
            return True
        return False

    def _column(self, key):
        if isinstance(key, str):
            return self.get_column_index(key)
        return key

    def finalize(self):
        if not self._stmt:
            return
        handle, self._stmt = self._stmt, None
        self._column_indices = {}
        self._invalidate_row()
        db = self._lib.sqlite3_db_handle(handle)
        # The handle is released even when the engine reports an error here.
        res = self._lib.sqlite3_finalize(handle)
        log.debug("finalized statement: %r", self.sql)
        if res != SQLITE_OK and not self._repeats_step_failure(res):
            _raise_error(db, "failed to finalize statement")

    def take(self):
        """Move the handle into a new Statement, leaving this one empty."""
        other = Statement()
        other._stmt, self._stmt = self._stmt, None
        other._column_indices, self._column_indices = self._column_indices, {}
        other._has_row = self._has_row
        other._step_failed, self._step_failed = self._step_failed, False
        other.sql = self.sql
        self._invalidate_row()
        return other

    # input

    def param_count(self):
        self._ensure()
        return self._lib.sqlite3_bind_parameter_count(self._stmt)

    def get_param_index(self, param_name):
        self._ensure()
        index = self._lib.sqlite3_bind_parameter_index(self._stmt, param_name.encode("utf-8"))
        if index == 0:
            raise OtherError(f"parameter not found: {param_name}")
        return index

    def get_param_name(self, index):
        self._ensure()
        return _decode(self._lib.sqlite3_bind_parameter_name(self._stmt, index))

    def _param_index(self, key):
        if isinstance(key, str):
            return self.get_param_index(key)
        return key

    def param(self, key):
        return Parameter(self, self._param_index(key))

    def bind_null(self, key):
        self._ensure()
        index = self._param_index(key)
        self._check(self._lib.sqlite3_bind_null(self._stmt, index), "failed to bind null")

    def bind_int(self, key, value):
        self._ensure()
        index = self._param_index(key)
        if not INT32_MIN <= value <= INT32_MAX:
            raise OverflowError(f"value does not fit a 32-bit integer: {value}")
        self._check(self._lib.sqlite3_bind_int(self._stmt, index, value), "failed to bind int")

    def bind_int64(self, key, value):
        self._ensure()
        index = self._param_index(key)
        if not INT64_MIN <= value <= INT64_MAX:
            raise OverflowError(f"value does not fit a 64-bit integer: {value}")
        self._check(self._lib.sqlite3_bind_int64(self._stmt, index, value), "failed to bind int64")

    def bind_double(self, key, value):
        self._ensure()
        index = self._param_index(key)
        self._check(self._lib.sqlite3_bind_double(self._stmt, index, float(value)), "failed to bind double")

    def bind_text(self, key, value):
        self._ensure()
        index = self._param_index(key)
        encoded = value.encode("utf-8", errors="surrogateescape")
        res = self._lib.sqlite3_bind_text(self._stmt, index, encoded, len(encoded), SQLITE_TRANSIENT)
        self._check(res, "failed to bind text")

    def bind_blob(self, key, value):
        self._ensure()
        index = self._param_index(key)
        data = value.tobytes() if isinstance(value, Blob) else bytes(value)
        if data:
            res = self._lib.sqlite3_bind_blob(self._stmt, index, data, len(data), SQLITE_TRANSIENT)
        else:
            # A NULL data pointer would bind SQL NULL instead of an empty blob.
            res = self._lib.sqlite3_bind_zeroblob(self._stmt, index, 0)
        self._check(res, "failed to bind blob")

    def bind(self, key, value):
        if value is None:
            self.bind_null(key)
        elif isinstance(value, int):
            self.bind_int64(key, int(value))
        elif isinstance(value, float):
            self.bind_double(key, value)
        elif isinstance(value, str):
            self.bind_text(key, value)
        elif isinstance(value, (Blob, bytes, bytearray, memoryview)):
            self.bind_blob(key, value)
        else:
            raise TypeError(f"unsupported parameter type: {type(value).__name__}")

    def bind_all(self, *values):
        """Bind ``values`` to positions 1..n in order."""
        for index, value in enumerate(values, start=1):
            self.bind(index, value)

    # get results (columns) for current row

    def __getitem__(self, key):
        return Column(self, self._column(key))

    def column_count(self):
        self._ensure()
        return self._lib.sqlite3_column_count(self._stmt)

    count = column_count

    def get_column_index(self, column_name):
        self._ensure()
        try:
            return self._column_indices[column_name]
        except KeyError:
            raise OtherError(f"column not found: {column_name}") from None

    def get_column_type(self, key):
        index = self._column(key)
        self._ensure_row(index)
        native = self._lib.sqlite3_column_type(self._stmt, index)
        try:
            return _NATIVE_TYPES[native]
        except KeyError:
            raise OtherError(f"unknown column type: {native}") from None

    def get_column_decl_type(self, key):
        index = self._column(key)
        self._ensure()
        self._check_column(index)
        return _decode(self._lib.sqlite3_column_decltype(self._stmt, index))

    def get_column_name(self, index):
        self._ensure()
        self._check_column(index)
        return _decode(self._lib.sqlite3_column_name(self._stmt, index))

    @staticmethod
    def has_column_metadata():
        return _lib_has_column_metadata(load_library())

    def _column_metadata(self, func_name, key):
        if not self.has_column_metadata():
            raise OtherError("column metadata not enabled, to enable, build SQLite with SQLITE_ENABLE_COLUMN_METADATA")
        index = self._column(key)
        self._ensure()
        self._check_column(index)
        return _decode(getattr(self._lib, func_name)(self._stmt, index))

    def get_column_origin_name(self, key):
        return self._column_metadata("sqlite3_column_origin_name", key)

    def get_column_table_name(self, key):
        return self._column_metadata("sqlite3_column_table_name", key)

    def get_column_database_name(self, key):
        return self._column_metadata("sqlite3_column_database_name", key)

    def get_int(self, key):
        index = self._column(key)
        self._ensure_row(index)
        return self._lib.sqlite3_column_int(self._stmt, index)

    def get_int64(self, key):
        index = self._column(key)
        self._ensure_row(index)
        return self._lib.sqlite3_column_int64(self._stmt, index)

    def get_double(self, key):
        index = self._column(key)
        self._ensure_row(index)
        return self._lib.sqlite3_column_double(self._stmt, index)

    def get_string(self, key):
        """Text of a column, decoded as UTF-8.

        Bytes that are not valid UTF-8 survive as surrogate escapes, and
        binding the string back restores them. ``get_blob()`` gives the raw
        bytes of a text column.
        """
        index = self._column(key)
        self._ensure_row(index)
        # column_bytes must follow column_text: the text call may convert the value.
        ptr = self._lib.sqlite3_column_text(self._stmt, index)
        size = self._lib.sqlite3_column_bytes(self._stmt, index)
        if not ptr:
            return ""
        return ctypes.string_at(ptr, size).decode("utf-8", errors="surrogateescape")

    def get_blob(self, key):
        index = self._column(key)
        self._ensure_row(index)
        ptr = self._lib.sqlite3_column_blob(self._stmt, index)
        size = self._lib.sqlite3_column_bytes(self._stmt, index)
        return Blob(self, self._row_generation, ptr, size)

    def step(self):
        self._ensure()
        self._invalidate_row()
        res = self._lib.sqlite3_step(self._stmt)
        self._step_failed = res not in (SQLITE_ROW, SQLITE_DONE)
        if res == SQLITE_ROW:
            self._has_row = True
            return True
        if res == SQLITE_DONE:
            return False
        _raise_error(self._db_handle(), "failed to step statement")

    exec = step
    execute = step

    def reset(self):
        """Rewind for re-execution; bound values are kept."""
        self._ensure()
        self._invalidate_row()
        res = self._lib.sqlite3_reset(self._stmt)
        if not self._repeats_step_failure(res):
            self._check(res, "failed to reset statement")

    def clear_bindings(self):
        self._ensure()
        self._invalidate_row()
        self._check(self._lib.sqlite3_clear_bindings(self._stmt), "failed to clear bindings")

    def reuse(self):
        self.reset()
        self.clear_bindings()

    # statement prepared/not empty
    def __bool__(self):
        return bool(self._stmt)

    __copy__ = _no_copy
    __deepcopy__ = _no_copy
    __reduce_ex__ = _no_copy

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.finalize()
            return
        # Don't mask the exception already in flight.
        try:
            self.finalize()
        except Error as e:
            log.warning("finalize after %s failed: %s", exc_type.__name__, e)

    def __del__(self):
        try:
            self.finalize()
        except Error as e:
            log.warning("finalize on garbage collection failed: %s", e)

    def __repr__(self):
        state = "prepared" if self._stmt else "empty"
        return f"<Statement {state} sql={self.sql!r}>"


class Connection:
    """Owner of one database handle.

    Statements prepared here must be finalized before ``close()``; closing
    with live statements fails with BusyError.
    """

    def __init__(self, name=None, flags=DEFAULT_OPEN_FLAGS):
        self._db = None
        self._lib = load_library()
        if name is not None:
            self.open(name, flags)

    def open(self, name, flags=DEFAULT_OPEN_FLAGS):
        if self._db:
            self.close()
        path = os.fspath(name)
        handle = ctypes.c_void_p()
        res = self._lib.sqlite3_open_v2(path.encode("utf-8"), ctypes.byref(handle), _to_native_flags(flags), None)
        if res != SQLITE_OK:
            db = handle.value
            if not db:
                raise Error("failed to open database", _decode(self._lib.sqlite3_errstr(res)), res, res)
            # Read the error context off the half-open handle, then release it.
            try:
                _raise_error(db, "failed to open database")
            finally:
                self._lib.sqlite3_close(db)
        self._db = handle.value
        log.debug("opened database %r flags=%r", path, flags)

    def close(self):
        if not self._db:
            return
        db = self._db
        res = self._lib.sqlite3_close(db)
        if res != SQLITE_OK:
            # Null the handle anyway so a failed close can't leave us stuck open.
            # close_v2 turns the still-busy handle into a zombie that the engine
            # releases once its last statement is finalized.
            try:
                _raise_error(db, "failed to close connection")
            finally:
                self._lib.sqlite3_close_v2(db)
                self._db = None
        self._db = None
        log.debug("closed database")

    def _ensure(self):
        if not self._db:
            raise OtherError("SQLite database connection not initialized")

    def prepare(self, sql, persistent=False):
        """Compile ``sql`` into a Statement.

        ``persistent`` hints that the statement will be reused many times.
        """
        self._ensure()
        log.debug("prepare: %s", sql)
        return Statement(self._db, sql, persistent)

    def exec(self, sql):
        """Run ``sql`` (one or more statements) to completion, discarding rows."""
        self._ensure()
        res = self._lib.sqlite3_exec(self._db, sql.encode("utf-8"), None, None, None)
        if res != SQLITE_OK:
            _raise_error(self._db, "failed to execute SQL query", sql=sql)

    execute = exec

    def take(self):
        """Move the handle into a new Connection, leaving this one closed."""
        other = Connection()
        other._db, self._db = self._db, None
        return other

    def __bool__(self):
        return bool(self._db)

    __copy__ = _no_copy
    __deepcopy__ = _no_copy
    __reduce_ex__ = _no_copy

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
            return
        # Don't mask the exception already in flight.
        try:
            self.close()
        except Error as e:
            log.warning("close after %s failed: %s", exc_type.__name__, e)

    def __del__(self):
        try:
            self.close()
        except Error as e:
            log.warning("close on garbage collection failed: %s", e)

    def __repr__(self):
        state = "open" if self._db else "closed"
        return f"<Connection {state}>"
