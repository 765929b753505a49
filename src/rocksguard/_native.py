"""
rocksguard native library bindings

Copyright (C) rocksguard authors

Licensed under the Mozilla Public License, v. 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    https://www.mozilla.org/en-US/MPL/2.0/

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from __future__ import annotations

import ctypes
import logging
import os
import sys
import threading
from ctypes import POINTER, Structure, c_char_p, c_int, c_size_t, c_ubyte, c_void_p
from ctypes.util import find_library
from typing import Any

logger = logging.getLogger(__name__)

LIBRARY_ENV_VAR = "ROCKSGUARD_LIBRARY"


class _Opaque(Structure):
    """Pointee type of a native handle. Never instantiated from Python."""

    _fields_ = []

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        raise TypeError(f"{type(self).__name__} is an opaque native type and cannot be constructed")


class _CDatabase(_Opaque):
    """rocksdb_t"""


class _COptions(_Opaque):
    """rocksdb_options_t"""


class _CReadOptions(_Opaque):
    """rocksdb_readoptions_t"""


class _CWriteOptions(_Opaque):
    """rocksdb_writeoptions_t"""


class _CIterator(_Opaque):
    """rocksdb_iterator_t"""


class _CColumnFamilyHandle(_Opaque):
    """rocksdb_column_family_handle_t"""


OPAQUE_TYPES = (
    _CDatabase,
    _COptions,
    _CReadOptions,
    _CWriteOptions,
    _CIterator,
    _CColumnFamilyHandle,
)


def _assert_opaque_layout() -> None:
    for kind in OPAQUE_TYPES:
        size = ctypes.sizeof(kind)
        if size != 0:
            raise TypeError(f"opaque native type {kind.__name__} must be zero-sized, got {size} bytes")


_assert_opaque_layout()

DatabasePtr = POINTER(_CDatabase)
OptionsPtr = POINTER(_COptions)
ReadOptionsPtr = POINTER(_CReadOptions)
WriteOptionsPtr = POINTER(_CWriteOptions)
IteratorPtr = POINTER(_CIterator)
ColumnFamilyPtr = POINTER(_CColumnFamilyHandle)

# char** errptr; the message address is read back from a c_void_p
_ErrPtr = POINTER(c_void_p)


def _declare(lib: ctypes.CDLL) -> ctypes.CDLL:
    """Attach argtypes/restype to every entry point the bindings call."""
    lib.rocksdb_open.argtypes = [OptionsPtr, c_char_p, _ErrPtr]
    lib.rocksdb_open.restype = DatabasePtr

    lib.rocksdb_open_for_read_only.argtypes = [OptionsPtr, c_char_p, c_ubyte, _ErrPtr]
    lib.rocksdb_open_for_read_only.restype = DatabasePtr

    lib.rocksdb_open_column_families.argtypes = [
        OptionsPtr,
        c_char_p,
        c_int,
        POINTER(c_char_p),
        POINTER(OptionsPtr),
        POINTER(ColumnFamilyPtr),
        _ErrPtr,
    ]
    lib.rocksdb_open_column_families.restype = DatabasePtr

    lib.rocksdb_close.argtypes = [DatabasePtr]
    lib.rocksdb_close.restype = None

    lib.rocksdb_list_column_families.argtypes = [OptionsPtr, c_char_p, POINTER(c_size_t), _ErrPtr]
    lib.rocksdb_list_column_families.restype = POINTER(c_void_p)

    lib.rocksdb_list_column_families_destroy.argtypes = [POINTER(c_void_p), c_size_t]
    lib.rocksdb_list_column_families_destroy.restype = None

    lib.rocksdb_put.argtypes = [
        DatabasePtr,
        WriteOptionsPtr,
        c_char_p,
        c_size_t,
        c_char_p,
        c_size_t,
        _ErrPtr,
    ]
    lib.rocksdb_put.restype = None

    lib.rocksdb_get.argtypes = [
        DatabasePtr,
        ReadOptionsPtr,
        c_char_p,
        c_size_t,
        POINTER(c_size_t),
        _ErrPtr,
    ]
    lib.rocksdb_get.restype = c_void_p

    lib.rocksdb_delete.argtypes = [DatabasePtr, WriteOptionsPtr, c_char_p, c_size_t, _ErrPtr]
    lib.rocksdb_delete.restype = None

    lib.rocksdb_put_cf.argtypes = [
        DatabasePtr,
        WriteOptionsPtr,
        ColumnFamilyPtr,
        c_char_p,
        c_size_t,
        c_char_p,
        c_size_t,
        _ErrPtr,
    ]
    lib.rocksdb_put_cf.restype = None

    lib.rocksdb_get_cf.argtypes = [
        DatabasePtr,
        ReadOptionsPtr,
        ColumnFamilyPtr,
        c_char_p,
        c_size_t,
        POINTER(c_size_t),
        _ErrPtr,
    ]
    lib.rocksdb_get_cf.restype = c_void_p

    lib.rocksdb_delete_cf.argtypes = [
        DatabasePtr,
        WriteOptionsPtr,
        ColumnFamilyPtr,
        c_char_p,
        c_size_t,
        _ErrPtr,
    ]
    lib.rocksdb_delete_cf.restype = None

    lib.rocksdb_options_create.argtypes = []
    lib.rocksdb_options_create.restype = OptionsPtr

    lib.rocksdb_options_destroy.argtypes = [OptionsPtr]
    lib.rocksdb_options_destroy.restype = None

    lib.rocksdb_options_set_create_if_missing.argtypes = [OptionsPtr, c_ubyte]
    lib.rocksdb_options_set_create_if_missing.restype = None

    lib.rocksdb_options_set_error_if_exists.argtypes = [OptionsPtr, c_ubyte]
    lib.rocksdb_options_set_error_if_exists.restype = None

    lib.rocksdb_readoptions_create.argtypes = []
    lib.rocksdb_readoptions_create.restype = ReadOptionsPtr

    lib.rocksdb_readoptions_destroy.argtypes = [ReadOptionsPtr]
    lib.rocksdb_readoptions_destroy.restype = None

    lib.rocksdb_writeoptions_create.argtypes = []
    lib.rocksdb_writeoptions_create.restype = WriteOptionsPtr

    lib.rocksdb_writeoptions_destroy.argtypes = [WriteOptionsPtr]
    lib.rocksdb_writeoptions_destroy.restype = None

    lib.rocksdb_writeoptions_set_sync.argtypes = [WriteOptionsPtr, c_ubyte]
    lib.rocksdb_writeoptions_set_sync.restype = None

    lib.rocksdb_create_column_family.argtypes = [DatabasePtr, OptionsPtr, c_char_p, _ErrPtr]
    lib.rocksdb_create_column_family.restype = ColumnFamilyPtr

    lib.rocksdb_drop_column_family.argtypes = [DatabasePtr, ColumnFamilyPtr, _ErrPtr]
    lib.rocksdb_drop_column_family.restype = None

    lib.rocksdb_column_family_handle_destroy.argtypes = [ColumnFamilyPtr]
    lib.rocksdb_column_family_handle_destroy.restype = None

    lib.rocksdb_create_iterator.argtypes = [DatabasePtr, ReadOptionsPtr]
    lib.rocksdb_create_iterator.restype = IteratorPtr

    lib.rocksdb_create_iterator_cf.argtypes = [DatabasePtr, ReadOptionsPtr, ColumnFamilyPtr]
    lib.rocksdb_create_iterator_cf.restype = IteratorPtr

    lib.rocksdb_iter_destroy.argtypes = [IteratorPtr]
    lib.rocksdb_iter_destroy.restype = None

    lib.rocksdb_iter_valid.argtypes = [IteratorPtr]
    lib.rocksdb_iter_valid.restype = c_ubyte

    lib.rocksdb_iter_seek_to_first.argtypes = [IteratorPtr]
    lib.rocksdb_iter_seek_to_first.restype = None

    lib.rocksdb_iter_seek_to_last.argtypes = [IteratorPtr]
    lib.rocksdb_iter_seek_to_last.restype = None

    lib.rocksdb_iter_seek.argtypes = [IteratorPtr, c_char_p, c_size_t]
    lib.rocksdb_iter_seek.restype = None

    lib.rocksdb_iter_seek_for_prev.argtypes = [IteratorPtr, c_char_p, c_size_t]
    lib.rocksdb_iter_seek_for_prev.restype = None

    lib.rocksdb_iter_next.argtypes = [IteratorPtr]
    lib.rocksdb_iter_next.restype = None

    lib.rocksdb_iter_prev.argtypes = [IteratorPtr]
    lib.rocksdb_iter_prev.restype = None

    lib.rocksdb_iter_key.argtypes = [IteratorPtr, POINTER(c_size_t)]
    lib.rocksdb_iter_key.restype = c_void_p

    lib.rocksdb_iter_value.argtypes = [IteratorPtr, POINTER(c_size_t)]
    lib.rocksdb_iter_value.restype = c_void_p

    lib.rocksdb_iter_get_error.argtypes = [IteratorPtr, _ErrPtr]
    lib.rocksdb_iter_get_error.restype = None

    lib.rocksdb_free.argtypes = [c_void_p]
    lib.rocksdb_free.restype = None

    return lib


def _library_names() -> list[str]:
    if sys.platform == "win32":
        return ["rocksdb.dll", "librocksdb.dll"]
    if sys.platform == "darwin":
        return ["librocksdb.dylib", "librocksdb.so"]
    return ["librocksdb.so", "librocksdb.so.9", "librocksdb.so.8", "librocksdb.so.7"]


_SEARCH_PATHS = [
    "",
    "/usr/local/lib/",
    "/usr/lib/",
    "/usr/lib/x86_64-linux-gnu/",
    "/usr/lib/aarch64-linux-gnu/",
    "/opt/homebrew/lib/",
    "/mingw64/lib/",
]


def _find_and_open(path: str | None) -> ctypes.CDLL:
    if path:
        try:
            return ctypes.CDLL(path)
        except OSError as exc:
            raise RuntimeError(f"Could not load RocksDB library from {path!r}: {exc}") from exc

    for directory in _SEARCH_PATHS:
        for name in _library_names():
            try:
                return ctypes.CDLL(directory + name)
            except OSError:
                continue

    found = find_library("rocksdb")
    if found:
        try:
            return ctypes.CDLL(found)
        except OSError:
            pass

    raise RuntimeError(
        "Could not load RocksDB library. "
        "Please ensure librocksdb is installed and in your library path. "
        f"Set {LIBRARY_ENV_VAR} to the full path of the shared library to override the search. "
        "On Linux: /usr/local/lib or set LD_LIBRARY_PATH. "
        "On macOS: /usr/local/lib or /opt/homebrew/lib or set DYLD_LIBRARY_PATH. "
        "On Windows: ensure rocksdb.dll is in PATH or current directory."
    )


_lib: Any = None
# reentrant: get_library holds it while load_library calls install_library
_lib_lock = threading.RLock()


def load_library(path: str | None = None) -> ctypes.CDLL:
    """
    Load librocksdb, declare its prototypes and make it the active library.

    Args:
        path: Full path of the shared library. Defaults to the
            ROCKSGUARD_LIBRARY environment variable, then the platform search.

    Returns:
        The loaded library
    """
    path = path or os.environ.get(LIBRARY_ENV_VAR) or None
    lib = _declare(_find_and_open(path))
    install_library(lib)
    logger.debug("loaded RocksDB library %s", getattr(lib, "_name", lib))
    return lib


def install_library(lib: Any) -> Any:
    """Make ``lib`` the library used for new handles. Returns the previous one."""
    global _lib
    with _lib_lock:
        previous = _lib
        _lib = lib
    return previous


def current_library() -> Any:
    """The active library, or None if nothing has been loaded yet."""
    return _lib


def get_library() -> Any:
    """The active library, loading librocksdb on first use."""
    if _lib is None:
        with _lib_lock:
            if _lib is None:
                load_library()
    return _lib
