import ctypes
import ctypes.util
import os
from ctypes import c_int, c_int64, c_double, c_char_p, c_void_p, POINTER

# Result codes (sqlite3.h).
SQLITE_OK = 0
SQLITE_ERROR = 1
SQLITE_BUSY = 5
SQLITE_MISUSE = 21
SQLITE_ROW = 100
SQLITE_DONE = 101

# Fundamental column types.
SQLITE_INTEGER = 1
SQLITE_FLOAT = 2
SQLITE_TEXT = 3
SQLITE_BLOB = 4
SQLITE_NULL = 5

# sqlite3_open_v2 flags
SQLITE_OPEN_READONLY = 0x00000001
SQLITE_OPEN_READWRITE = 0x00000002
SQLITE_OPEN_CREATE = 0x00000004
SQLITE_OPEN_URI = 0x00000040
SQLITE_OPEN_MEMORY = 0x00000080
SQLITE_OPEN_NOMUTEX = 0x00008000
SQLITE_OPEN_FULLMUTEX = 0x00010000
SQLITE_OPEN_SHAREDCACHE = 0x00020000
SQLITE_OPEN_PRIVATECACHE = 0x00040000
SQLITE_OPEN_NOFOLLOW = 0x01000000

SQLITE_PREPARE_PERSISTENT = 0x01

SQLITE_CONFIG_SERIALIZED = 3

# Destructor sentinel: the engine copies text/blob before the bind call returns.
SQLITE_TRANSIENT = c_void_p(-1)

# Tried in order when SQLITEWRAP_NATIVE_LIB is unset and find_library() fails.
LIB_NAMES = [
    "libsqlite3.so.0",
    "libsqlite3.so",
    "libsqlite3.dylib",
    "sqlite3.dll",
]

_lib = None


def _candidates():
    found = ctypes.util.find_library("sqlite3")
    if found:
        yield found
    yield from LIB_NAMES


def load_library():
    global _lib
    if _lib is not None:
        return _lib

    lib_path = os.environ.get("SQLITEWRAP_NATIVE_LIB")

    if lib_path:
        try:
            lib = ctypes.CDLL(lib_path)
        except OSError as e:
            raise RuntimeError(f"Failed to load SQLite native library at {lib_path}: {e}")
    else:
        lib = None
        for name in _candidates():
            try:
                lib = ctypes.CDLL(name)
                break
            except OSError:
                continue
        if lib is None:
            raise RuntimeError("Could not find SQLite native library. Set SQLITEWRAP_NATIVE_LIB env var.")

    # Define signatures

    # Library-wide
    lib.sqlite3_libversion.argtypes = []
    lib.sqlite3_libversion.restype = c_char_p

    lib.sqlite3_threadsafe.argtypes = []
    lib.sqlite3_threadsafe.restype = c_int

    # sqlite3_config is variadic; only the verb is ever passed.
    lib.sqlite3_config.restype = c_int

    lib.sqlite3_errstr.argtypes = [c_int]
    lib.sqlite3_errstr.restype = c_char_p

    # Connection
    lib.sqlite3_open_v2.argtypes = [c_char_p, POINTER(c_void_p), c_int, c_char_p]
    lib.sqlite3_open_v2.restype = c_int

    lib.sqlite3_close.argtypes = [c_void_p]
    lib.sqlite3_close.restype = c_int

    # Defers the close until the last statement is finalized.
    lib.sqlite3_close_v2.argtypes = [c_void_p]
    lib.sqlite3_close_v2.restype = c_int

    lib.sqlite3_exec.argtypes = [c_void_p, c_char_p, c_void_p, c_void_p, c_void_p]
    lib.sqlite3_exec.restype = c_int

    # Last error state
    lib.sqlite3_errcode.argtypes = [c_void_p]
    lib.sqlite3_errcode.restype = c_int

    lib.sqlite3_extended_errcode.argtypes = [c_void_p]
    lib.sqlite3_extended_errcode.restype = c_int

    lib.sqlite3_errmsg.argtypes = [c_void_p]
    lib.sqlite3_errmsg.restype = c_char_p

    # Added in 3.38
    if hasattr(lib, "sqlite3_error_offset"):
        lib.sqlite3_error_offset.argtypes = [c_void_p]
        lib.sqlite3_error_offset.restype = c_int

    # Statement lifecycle
    lib.sqlite3_prepare_v3.argtypes = [c_void_p, c_char_p, c_int, ctypes.c_uint, POINTER(c_void_p), POINTER(c_char_p)]
    lib.sqlite3_prepare_v3.restype = c_int

    lib.sqlite3_finalize.argtypes = [c_void_p]
    lib.sqlite3_finalize.restype = c_int

    lib.sqlite3_step.argtypes = [c_void_p]
    lib.sqlite3_step.restype = c_int

    lib.sqlite3_reset.argtypes = [c_void_p]
    lib.sqlite3_reset.restype = c_int

    lib.sqlite3_clear_bindings.argtypes = [c_void_p]
    lib.sqlite3_clear_bindings.restype = c_int

    lib.sqlite3_db_handle.argtypes = [c_void_p]
    lib.sqlite3_db_handle.restype = c_void_p

    # Parameters
    lib.sqlite3_bind_parameter_count.argtypes = [c_void_p]
    lib.sqlite3_bind_parameter_count.restype = c_int

    lib.sqlite3_bind_parameter_index.argtypes = [c_void_p, c_char_p]
    lib.sqlite3_bind_parameter_index.restype = c_int

    lib.sqlite3_bind_parameter_name.argtypes = [c_void_p, c_int]
    lib.sqlite3_bind_parameter_name.restype = c_char_p

    # Bindings
    lib.sqlite3_bind_null.argtypes = [c_void_p, c_int]
    lib.sqlite3_bind_null.restype = c_int

    lib.sqlite3_bind_int.argtypes = [c_void_p, c_int, c_int]
    lib.sqlite3_bind_int.restype = c_int

    lib.sqlite3_bind_int64.argtypes = [c_void_p, c_int, c_int64]
    lib.sqlite3_bind_int64.restype = c_int

    lib.sqlite3_bind_double.argtypes = [c_void_p, c_int, c_double]
    lib.sqlite3_bind_double.restype = c_int

    lib.sqlite3_bind_text.argtypes = [c_void_p, c_int, c_char_p, c_int, c_void_p]
    lib.sqlite3_bind_text.restype = c_int

    lib.sqlite3_bind_blob.argtypes = [c_void_p, c_int, c_void_p, c_int, c_void_p]
    lib.sqlite3_bind_blob.restype = c_int

    lib.sqlite3_bind_zeroblob.argtypes = [c_void_p, c_int, c_int]
    lib.sqlite3_bind_zeroblob.restype = c_int

    # Columns
    lib.sqlite3_column_count.argtypes = [c_void_p]
    lib.sqlite3_column_count.restype = c_int

    lib.sqlite3_column_name.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_name.restype = c_char_p

    lib.sqlite3_column_decltype.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_decltype.restype = c_char_p

    lib.sqlite3_column_type.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_type.restype = c_int

    lib.sqlite3_column_int.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_int.restype = c_int

    lib.sqlite3_column_int64.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_int64.restype = c_int64

    lib.sqlite3_column_double.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_double.restype = c_double

    # Raw pointers: the text is length-delimited by sqlite3_column_bytes, not NUL.
    lib.sqlite3_column_text.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_text.restype = c_void_p

    lib.sqlite3_column_blob.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_blob.restype = c_void_p

    lib.sqlite3_column_bytes.argtypes = [c_void_p, c_int]
    lib.sqlite3_column_bytes.restype = c_int

    # Column metadata (only in SQLITE_ENABLE_COLUMN_METADATA builds)
    for name in ("sqlite3_column_table_name", "sqlite3_column_database_name", "sqlite3_column_origin_name"):
        if hasattr(lib, name):
            fn = getattr(lib, name)
            fn.argtypes = [c_void_p, c_int]
            fn.restype = c_char_p

    _lib = lib
    return _lib


def has_error_offset(lib) -> bool:
    return hasattr(lib, "sqlite3_error_offset")


def has_column_metadata(lib) -> bool:
    return hasattr(lib, "sqlite3_column_table_name")
