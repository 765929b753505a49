"""
rocksguard: RocksDB Python bindings

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
import threading
from ctypes import POINTER, c_char_p, c_size_t, c_void_p
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence, Union

from . import _native

logger = logging.getLogger(__name__)

PathLike = Union[str, bytes, "os.PathLike[Any]"]


class Direction(IntEnum):
    """Iteration direction."""

    FORWARD = 0
    REVERSE = 1


class RocksDBError(Exception):
    """Error reported by RocksDB, or by argument checks made before calling it."""

    def __init__(self, message: str, native: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.native = native

    @classmethod
    def from_native(cls, err: c_void_p, lib: Any) -> RocksDBError:
        """
        Take ownership of an error message set by a RocksDB call.

        The message is copied out and the native string released with
        rocksdb_free. ``err`` is reset to NULL so the same message can never
        be released twice.
        """
        address = err.value
        if not address:
            return cls("unknown error", native=True)
        err.value = None
        try:
            message = ctypes.string_at(address).decode("utf-8", errors="replace")
        finally:
            lib.rocksdb_free(address)
        return cls(message, native=True)

    @classmethod
    def from_message(cls, message: str) -> RocksDBError:
        """Create an error that did not come from RocksDB."""
        return cls(message)


class UsageError(RuntimeError):
    """A closed, dropped or foreign handle was used, or a cursor was misused."""


def _check_error(err: c_void_p, lib: Any) -> None:
    if err.value:
        raise RocksDBError.from_native(err, lib)


class NativeHandle:
    """
    Sole owner of one native RocksDB object.

    The handle remembers the library that created the object so the matching
    destroy call always goes back to the same library. Handles cannot be
    copied or pickled; ownership moves with take().
    """

    __slots__ = ("kind", "lib", "_ptr")

    def __init__(self, kind: type, ptr: Any, lib: Any) -> None:
        if not ptr:
            raise ValueError(f"cannot wrap a NULL {kind.__name__} pointer")
        if not isinstance(ptr, POINTER(kind)):
            raise TypeError(f"expected POINTER({kind.__name__}), got {type(ptr).__name__}")
        self.kind = kind
        self.lib = lib
        self._ptr = ptr

    @property
    def ptr(self) -> Any:
        if self._ptr is None:
            raise UsageError(f"native {self.kind.__name__} handle has already been released")
        return self._ptr

    def take(self) -> Any:
        """Move the pointer out, leaving this handle empty."""
        ptr, self._ptr = self._ptr, None
        return ptr

    def __bool__(self) -> bool:
        return self._ptr is not None

    def __copy__(self) -> NativeHandle:
        raise TypeError("native handles cannot be copied")

    def __deepcopy__(self, memo: dict) -> NativeHandle:
        raise TypeError("native handles cannot be copied")

    def __reduce__(self) -> Any:
        raise TypeError("native handles cannot be pickled")

    def __repr__(self) -> str:
        state = "released" if self._ptr is None else hex(ctypes.cast(self._ptr, c_void_p).value or 0)
        return f"NativeHandle({self.kind.__name__}, {state})"


def _release(handle: NativeHandle | None, destroy: str) -> None:
    """Destroy the object behind ``handle`` once. Destroy failures are logged, never raised."""
    if handle is None:
        return
    ptr = handle.take()
    if ptr is None:
        return
    try:
        getattr(handle.lib, destroy)(ptr)
    except Exception:
        logger.exception("failed to destroy native %s handle", handle.kind.__name__)


def _as_bytes(data: Any, what: str) -> bytes:
    if isinstance(data, bytes):
        return data
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    raise TypeError(f"{what} must be bytes-like, not {type(data).__name__}")


def _encode_path(path: PathLike) -> tuple[bytes, str]:
    try:
        raw = os.fsencode(path)
    except UnicodeError as exc:
        raise RocksDBError.from_message(f"invalid path {path!r}: {exc}") from exc
    if b"\x00" in raw:
        raise RocksDBError.from_message(f"invalid path {path!r}: embedded null byte")
    return raw, os.fsdecode(raw)


def _encode_name(name: str | bytes) -> bytes:
    if isinstance(name, str):
        try:
            raw = name.encode("utf-8")
        except UnicodeError as exc:
            raise RocksDBError.from_message(f"invalid column family name {name!r}: {exc}") from exc
    elif isinstance(name, bytes):
        raw = name
    else:
        raise TypeError(f"column family name must be str or bytes, not {type(name).__name__}")
    if b"\x00" in raw:
        raise RocksDBError.from_message(f"invalid column family name {name!r}: embedded null byte")
    return raw


@dataclass
class Config:
    """Settings for opening a database."""

    create_if_missing: bool = False
    error_if_exists: bool = False
    sync_writes: bool = False


class Options:
    """
    Options for opening a database or creating a column family.

    Setters may be called until the options are first passed to an open or
    create call; after that they raise UsageError. RocksDB copies what it
    needs during those calls, so the options may be closed once they return.
    """

    def __init__(self, create_if_missing: bool = False, error_if_exists: bool = False) -> None:
        self._handle: NativeHandle | None = None
        self._in_use = False
        self._create_if_missing = False
        self._error_if_exists = False

        lib = _native.get_library()
        ptr = lib.rocksdb_options_create()
        if not ptr:
            raise RocksDBError.from_message("failed to create options")
        self._handle = NativeHandle(_native._COptions, ptr, lib)

        if create_if_missing:
            self.set_create_if_missing(True)
        if error_if_exists:
            self.set_error_if_exists(True)

    @classmethod
    def from_config(cls, config: Config) -> Options:
        return cls(
            create_if_missing=config.create_if_missing,
            error_if_exists=config.error_if_exists,
        )

    @property
    def create_if_missing(self) -> bool:
        return self._create_if_missing

    @property
    def error_if_exists(self) -> bool:
        return self._error_if_exists

    @property
    def in_use(self) -> bool:
        return self._in_use

    @property
    def closed(self) -> bool:
        return not self._handle

    def set_create_if_missing(self, value: bool) -> Options:
        """Create the database if it does not exist yet."""
        ptr = self._mutable_ptr()
        self._handle.lib.rocksdb_options_set_create_if_missing(ptr, 1 if value else 0)
        self._create_if_missing = bool(value)
        return self

    def set_error_if_exists(self, value: bool) -> Options:
        """Fail to open if the database already exists."""
        ptr = self._mutable_ptr()
        self._handle.lib.rocksdb_options_set_error_if_exists(ptr, 1 if value else 0)
        self._error_if_exists = bool(value)
        return self

    def as_ptr(self) -> Any:
        if self._handle is None:
            raise UsageError("options were never created")
        return self._handle.ptr

    @property
    def _lib(self) -> Any:
        return self._handle.lib

    def _mutable_ptr(self) -> Any:
        if self._in_use:
            raise UsageError(
                "options cannot be modified after they were used to open a database "
                "or create a column family"
            )
        return self.as_ptr()

    def _use(self) -> Any:
        ptr = self.as_ptr()
        self._in_use = True
        return ptr

    def close(self) -> None:
        """Destroy the native options."""
        _release(self._handle, "rocksdb_options_destroy")

    def __enter__(self) -> Options:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        _release(getattr(self, "_handle", None), "rocksdb_options_destroy")

    def __repr__(self) -> str:
        return (
            f"Options(create_if_missing={self._create_if_missing}, "
            f"error_if_exists={self._error_if_exists})"
        )


class _ScopedOptions:
    """Per-call read or write options, destroyed when the call is done."""

    _kind: Any = None
    _create = ""
    _destroy = ""
    _label = ""

    def __init__(self, lib: Any) -> None:
        self._handle: NativeHandle | None = None
        ptr = getattr(lib, self._create)()
        if not ptr:
            raise RocksDBError.from_message(f"failed to create {self._label}")
        self._handle = NativeHandle(self._kind, ptr, lib)

    def as_ptr(self) -> Any:
        return self._handle.ptr

    def close(self) -> None:
        _release(self._handle, self._destroy)

    def __enter__(self) -> _ScopedOptions:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        _release(getattr(self, "_handle", None), self._destroy)


class _ScopedReadOptions(_ScopedOptions):
    _kind = _native._CReadOptions
    _create = "rocksdb_readoptions_create"
    _destroy = "rocksdb_readoptions_destroy"
    _label = "read options"


class _ScopedWriteOptions(_ScopedOptions):
    _kind = _native._CWriteOptions
    _create = "rocksdb_writeoptions_create"
    _destroy = "rocksdb_writeoptions_destroy"
    _label = "write options"

    def __init__(self, lib: Any, sync: bool = False) -> None:
        super().__init__(lib)
        if sync:
            try:
                lib.rocksdb_writeoptions_set_sync(self.as_ptr(), 1)
            except BaseException:
                self.close()
                raise


class _OwnedBuffer:
    """
    Value buffer allocated by RocksDB for a single get call.

    A NULL address means the key was absent. A present buffer is released
    with rocksdb_free exactly once, on close. Views handed out by view() are
    released at the same time, so they cannot outlive the memory.
    """

    __slots__ = ("_address", "_length", "_lib", "_views")

    def __init__(self, address: int | None, length: int, lib: Any) -> None:
        self._address = address or None
        self._length = length
        self._lib = lib
        self._views: list[memoryview] = []

    @property
    def present(self) -> bool:
        return self._address is not None

    def view(self) -> memoryview | None:
        if self._address is None:
            return None
        array = (ctypes.c_ubyte * self._length).from_address(self._address)
        view = memoryview(array).cast("B")
        self._views.append(view)
        return view

    def close(self) -> None:
        address, self._address = self._address, None
        if address is None:
            return
        for view in self._views:
            view.release()
        self._views.clear()
        try:
            self._lib.rocksdb_free(address)
        except Exception:
            logger.exception("failed to free native value buffer")

    def __enter__(self) -> _OwnedBuffer:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        if getattr(self, "_address", None) is not None:
            self.close()


class ColumnFamilyHandle:
    """
    Handle to one column family of an open database.

    The handle is valid until it is closed, passed to
    DB.drop_column_family, or its database is closed.
    """

    def __init__(self, db: DB, handle: NativeHandle, name: str) -> None:
        self._db = db
        self._handle = handle
        self.name = name

    @property
    def db(self) -> DB:
        return self._db

    @property
    def closed(self) -> bool:
        return not self._handle

    def close(self) -> None:
        """Destroy the handle. The column family and its data are kept."""
        self._db._forget(self)
        self._invalidate()

    def _invalidate(self) -> None:
        _release(self._handle, "rocksdb_column_family_handle_destroy")

    def __enter__(self) -> ColumnFamilyHandle:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        if getattr(self, "_handle", None) is not None:
            self._db._forget(self)
        _release(getattr(self, "_handle", None), "rocksdb_column_family_handle_destroy")

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"ColumnFamilyHandle(name={self.name!r}, {state})"


class DBIterator:
    """
    Cursor over the entries of a database or column family, in key order.

    A new cursor is unpositioned. key(), value() and item() return copies of
    the current entry, or None when the cursor is not on a valid entry.
    When valid() turns False, call status() to tell a clean end from a read
    error.
    """

    def __init__(self, db: DB, handle: NativeHandle, cf: ColumnFamilyHandle | None = None) -> None:
        self._db = db
        self._cf = cf
        self._handle = handle
        self._lib = handle.lib

    @property
    def closed(self) -> bool:
        return not self._handle

    def _ptr(self) -> Any:
        if not self._handle:
            raise UsageError("iterator is closed")
        return self._handle.ptr

    def _valid_ptr(self, operation: str) -> Any:
        ptr = self._ptr()
        if not self._lib.rocksdb_iter_valid(ptr):
            raise UsageError(f"{operation}() requires an iterator positioned at a valid entry")
        return ptr

    def valid(self) -> bool:
        """Check if the iterator is positioned at a valid entry."""
        if not self._handle:
            return False
        return bool(self._lib.rocksdb_iter_valid(self._handle.ptr))

    def seek_to_first(self) -> None:
        """Position the iterator at the first key."""
        self._lib.rocksdb_iter_seek_to_first(self._ptr())

    def seek_to_last(self) -> None:
        """Position the iterator at the last key."""
        self._lib.rocksdb_iter_seek_to_last(self._ptr())

    def seek(self, key: bytes) -> None:
        """Position the iterator at the first key >= target key."""
        key = _as_bytes(key, "key")
        self._lib.rocksdb_iter_seek(self._ptr(), key, len(key))

    def seek_for_prev(self, key: bytes) -> None:
        """Position the iterator at the last key <= target key."""
        key = _as_bytes(key, "key")
        self._lib.rocksdb_iter_seek_for_prev(self._ptr(), key, len(key))

    def next(self) -> None:
        """Move to the next entry."""
        self._lib.rocksdb_iter_next(self._valid_ptr("next"))

    def prev(self) -> None:
        """Move to the previous entry."""
        self._lib.rocksdb_iter_prev(self._valid_ptr("prev"))

    def _read(self, entry_point: str) -> bytes | None:
        length = c_size_t(0)
        address = getattr(self._lib, entry_point)(self._handle.ptr, ctypes.byref(length))
        if not address:
            return None
        return ctypes.string_at(address, length.value)

    def key(self) -> bytes | None:
        """Get the current key."""
        if not self.valid():
            return None
        return self._read("rocksdb_iter_key")

    def value(self) -> bytes | None:
        """Get the current value."""
        if not self.valid():
            return None
        return self._read("rocksdb_iter_value")

    def item(self) -> tuple[bytes, bytes] | None:
        """Get the current key and value."""
        if not self.valid():
            return None
        key = self._read("rocksdb_iter_key")
        value = self._read("rocksdb_iter_value")
        if key is None or value is None:
            return None
        return key, value

    def status(self) -> None:
        """
        Raise the error RocksDB recorded while iterating, if any.

        Raises:
            RocksDBError: If iteration stopped because of a read error
        """
        err = c_void_p()
        self._lib.rocksdb_iter_get_error(self._ptr(), ctypes.byref(err))
        _check_error(err, self._lib)

    def close(self) -> None:
        """Free iterator resources."""
        self._db._forget(self)
        self._invalidate()

    def _invalidate(self) -> None:
        _release(self._handle, "rocksdb_iter_destroy")

    def __enter__(self) -> DBIterator:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        if getattr(self, "_handle", None) is not None:
            self._db._forget(self)
        _release(getattr(self, "_handle", None), "rocksdb_iter_destroy")


class DBIteratorAdapter:
    """
    Lazy sequence of (key, value) pairs read from a positioned cursor.

    The first step returns the entry the cursor is already on; every later
    step moves the cursor one entry in the chosen direction first. When the
    cursor runs out the adapter closes it, raising the engine's iteration
    error once if there was one.
    """

    def __init__(self, cursor: DBIterator, direction: Direction) -> None:
        self._cursor = cursor
        self._direction = Direction(direction)
        self._just_seeked = True
        self._done = False

    @property
    def direction(self) -> Direction:
        return self._direction

    def __iter__(self) -> DBIteratorAdapter:
        return self

    def __next__(self) -> tuple[bytes, bytes]:
        if self._done:
            raise StopIteration

        if not self._just_seeked:
            if self._direction is Direction.FORWARD:
                self._cursor.next()
            else:
                self._cursor.prev()
        self._just_seeked = False

        item = self._cursor.item()
        if item is None:
            self._done = True
            try:
                self._cursor.status()
            finally:
                self._cursor.close()
            raise StopIteration
        return item

    def close(self) -> None:
        self._done = True
        self._cursor.close()

    def __enter__(self) -> DBIteratorAdapter:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False


class DB:
    """
    RocksDB database handle.

    Obtain one with DB.open, DB.open_for_read_only or
    DB.open_with_column_families. A DB and its column family handles can be
    shared between threads and used concurrently without extra locking;
    RocksDB synchronizes access to the database itself. Closing the database
    while another thread is still using it is not supported.
    """

    def __init__(self, handle: NativeHandle, path: str, sync_writes: bool = False) -> None:
        self._handle = handle
        self._lib = handle.lib
        self._path = path
        self.sync_writes = sync_writes
        # reentrant: a wrapper finalized by the collector may call _forget
        # while this thread already holds the lock
        self._lock = threading.RLock()
        self._closed = False
        # native handles of live iterators and column families, keyed by id();
        # held strongly so close() can destroy them before the database in
        # whatever order the wrappers are finalized
        self._iterators: dict[int, NativeHandle] = {}
        self._column_families: dict[int, NativeHandle] = {}

    @classmethod
    def _from_native(
        cls, lib: Any, ptr: Any, err: c_void_p, path: str, failure: str, sync_writes: bool = False
    ) -> DB:
        _check_error(err, lib)
        if not ptr:
            raise RocksDBError.from_message(failure)
        logger.debug("opened database at %s", path)
        return cls(NativeHandle(_native._CDatabase, ptr, lib), path, sync_writes=sync_writes)

    @classmethod
    def open(cls, options: Options, path: PathLike, *, sync_writes: bool = False) -> DB:
        """
        Open a database.

        Args:
            options: Database options
            path: Path to the database directory
            sync_writes: Default for the ``sync`` flag of put and delete calls

        Returns:
            DB instance

        Raises:
            RocksDBError: If the path is invalid or RocksDB fails to open the database
        """
        c_path, display = _encode_path(path)
        lib = options._lib
        err = c_void_p()
        ptr = lib.rocksdb_open(options._use(), c_path, ctypes.byref(err))
        return cls._from_native(lib, ptr, err, display, "failed to open database", sync_writes)

    @classmethod
    def open_for_read_only(
        cls, options: Options, path: PathLike, error_if_wal_file_exists: bool = False
    ) -> DB:
        """
        Open a database in read-only mode.

        Args:
            options: Database options
            path: Path to the database directory
            error_if_wal_file_exists: Fail if the database has unflushed WAL files
        """
        c_path, display = _encode_path(path)
        lib = options._lib
        err = c_void_p()
        ptr = lib.rocksdb_open_for_read_only(
            options._use(), c_path, 1 if error_if_wal_file_exists else 0, ctypes.byref(err)
        )
        return cls._from_native(
            lib, ptr, err, display, "failed to open database in read-only mode"
        )

    @classmethod
    def open_with_column_families(
        cls,
        options: Options,
        path: PathLike,
        names: Sequence[str | bytes],
        cf_options: Sequence[Options],
        *,
        sync_writes: bool = False,
    ) -> tuple[DB, list[ColumnFamilyHandle]]:
        """
        Open a database together with its column families.

        Every column family stored in the database must be named, starting
        with "default". Handles are returned in the order of ``names``.

        Args:
            options: Database options
            path: Path to the database directory
            names: Column family names
            cf_options: Options for each column family, same length as ``names``

        Returns:
            Tuple of the DB and one ColumnFamilyHandle per name

        Raises:
            RocksDBError: On empty or mismatched sequences, invalid names, or
                when RocksDB fails to open the database
        """
        names = list(names)
        cf_options = list(cf_options)
        if not names:
            raise RocksDBError.from_message("at least one column family name is required")
        if len(names) != len(cf_options):
            raise RocksDBError.from_message(
                f"mismatched counts: {len(names)} column family names, {len(cf_options)} options"
            )

        c_path, display = _encode_path(path)
        encoded = [_encode_name(name) for name in names]
        count = len(encoded)
        lib = options._lib

        c_names = (c_char_p * count)(*encoded)
        c_cf_options = (_native.OptionsPtr * count)(*[opts._use() for opts in cf_options])
        c_handles = (_native.ColumnFamilyPtr * count)()

        err = c_void_p()
        ptr = lib.rocksdb_open_column_families(
            options._use(), c_path, count, c_names, c_cf_options, c_handles, ctypes.byref(err)
        )
        db = cls._from_native(
            lib, ptr, err, display, "failed to open database with column families", sync_writes
        )

        handles = []
        missing = []
        for name, raw, cf_ptr in zip(names, encoded, c_handles):
            if cf_ptr:
                handle = ColumnFamilyHandle(
                    db, NativeHandle(_native._CColumnFamilyHandle, cf_ptr, lib), _display_name(raw)
                )
                db._register(handle)
                handles.append(handle)
            else:
                missing.append(name)

        if missing:
            # drop what was opened so no handle leaks with the failed call
            db.close()
            raise RocksDBError.from_message(f"RocksDB returned no handle for column families {missing!r}")

        return db, handles

    @staticmethod
    def list_column_families(options: Options, path: PathLike) -> list[str]:
        """
        List the column families stored in a database.

        Args:
            options: Database options
            path: Path to the database directory

        Returns:
            List of column family names
        """
        c_path, _ = _encode_path(path)
        lib = options._lib
        length = c_size_t(0)
        err = c_void_p()
        names_ptr = lib.rocksdb_list_column_families(
            options._use(), c_path, ctypes.byref(length), ctypes.byref(err)
        )
        _check_error(err, lib)
        if not names_ptr:
            return []
        try:
            return [
                ctypes.string_at(names_ptr[i]).decode("utf-8", errors="replace")
                for i in range(length.value)
            ]
        finally:
            lib.rocksdb_list_column_families_destroy(names_ptr, length.value)

    @property
    def path(self) -> str:
        """Path where this database is stored."""
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def _ptr(self) -> Any:
        if self._closed:
            raise UsageError("database is closed")
        return self._handle.ptr

    def _cf_ptr(self, cf: ColumnFamilyHandle) -> Any:
        if not isinstance(cf, ColumnFamilyHandle):
            raise TypeError(f"expected ColumnFamilyHandle, not {type(cf).__name__}")
        if cf._db is not self:
            raise UsageError(f"column family {cf.name!r} belongs to a different database")
        if cf.closed:
            raise UsageError(f"column family handle {cf.name!r} has been closed or dropped")
        return cf._handle.ptr

    def _registry(self, obj: ColumnFamilyHandle | DBIterator) -> dict[int, NativeHandle]:
        return self._iterators if isinstance(obj, DBIterator) else self._column_families

    def _register(self, obj: ColumnFamilyHandle | DBIterator) -> None:
        with self._lock:
            if self._closed:
                raise UsageError("database is closed")
            self._registry(obj)[id(obj._handle)] = obj._handle

    def _forget(self, obj: ColumnFamilyHandle | DBIterator) -> None:
        with self._lock:
            self._registry(obj).pop(id(obj._handle), None)

    def _sync(self, sync: bool | None) -> bool:
        return self.sync_writes if sync is None else bool(sync)

    def _put(self, cf: ColumnFamilyHandle | None, key: bytes, value: bytes, sync: bool | None) -> None:
        key = _as_bytes(key, "key")
        value = _as_bytes(value, "value")
        db = self._ptr()
        cf_ptr = None if cf is None else self._cf_ptr(cf)
        err = c_void_p()
        with _ScopedWriteOptions(self._lib, self._sync(sync)) as write_options:
            if cf_ptr is None:
                self._lib.rocksdb_put(
                    db, write_options.as_ptr(), key, len(key), value, len(value), ctypes.byref(err)
                )
            else:
                self._lib.rocksdb_put_cf(
                    db, write_options.as_ptr(), cf_ptr, key, len(key), value, len(value), ctypes.byref(err)
                )
        _check_error(err, self._lib)

    def _get(self, cf: ColumnFamilyHandle | None, key: bytes) -> bytes | None:
        key = _as_bytes(key, "key")
        db = self._ptr()
        cf_ptr = None if cf is None else self._cf_ptr(cf)
        length = c_size_t(0)
        err = c_void_p()
        with _ScopedReadOptions(self._lib) as read_options:
            if cf_ptr is None:
                address = self._lib.rocksdb_get(
                    db, read_options.as_ptr(), key, len(key), ctypes.byref(length), ctypes.byref(err)
                )
            else:
                address = self._lib.rocksdb_get_cf(
                    db, read_options.as_ptr(), cf_ptr, key, len(key), ctypes.byref(length), ctypes.byref(err)
                )
        with _OwnedBuffer(address, length.value, self._lib) as buffer:
            _check_error(err, self._lib)
            view = buffer.view()
            return None if view is None else bytes(view)

    def _delete(self, cf: ColumnFamilyHandle | None, key: bytes, sync: bool | None) -> None:
        key = _as_bytes(key, "key")
        db = self._ptr()
        cf_ptr = None if cf is None else self._cf_ptr(cf)
        err = c_void_p()
        with _ScopedWriteOptions(self._lib, self._sync(sync)) as write_options:
            if cf_ptr is None:
                self._lib.rocksdb_delete(db, write_options.as_ptr(), key, len(key), ctypes.byref(err))
            else:
                self._lib.rocksdb_delete_cf(
                    db, write_options.as_ptr(), cf_ptr, key, len(key), ctypes.byref(err)
                )
        _check_error(err, self._lib)

    def put(self, key: bytes, value: bytes, *, sync: bool | None = None) -> None:
        """
        Put a key-value pair into the database.

        Args:
            key: Key as bytes
            value: Value as bytes
            sync: Sync the write-ahead log before returning; defaults to ``sync_writes``
        """
        self._put(None, key, value, sync)

    def get(self, key: bytes) -> bytes | None:
        """
        Get a value by key.

        Returns:
            Value as bytes, or None if the key does not exist

        Raises:
            RocksDBError: If the read failed
        """
        return self._get(None, key)

    def delete(self, key: bytes, *, sync: bool | None = None) -> None:
        """Delete a key. Deleting a missing key is not an error."""
        self._delete(None, key, sync)

    def put_cf(self, cf: ColumnFamilyHandle, key: bytes, value: bytes, *, sync: bool | None = None) -> None:
        """Put a key-value pair into a column family."""
        self._put(cf, key, value, sync)

    def get_cf(self, cf: ColumnFamilyHandle, key: bytes) -> bytes | None:
        """Get a value from a column family, or None if the key does not exist."""
        return self._get(cf, key)

    def delete_cf(self, cf: ColumnFamilyHandle, key: bytes, *, sync: bool | None = None) -> None:
        """Delete a key from a column family."""
        self._delete(cf, key, sync)

    def create_column_family(self, options: Options, name: str | bytes) -> ColumnFamilyHandle:
        """
        Create a new column family.

        Args:
            options: Options for the column family
            name: Name of the column family

        Returns:
            ColumnFamilyHandle for the new column family
        """
        c_name = _encode_name(name)
        db = self._ptr()
        err = c_void_p()
        ptr = self._lib.rocksdb_create_column_family(db, options._use(), c_name, ctypes.byref(err))
        _check_error(err, self._lib)
        if not ptr:
            raise RocksDBError.from_message(f"failed to create column family {name!r}")

        handle = ColumnFamilyHandle(
            self, NativeHandle(_native._CColumnFamilyHandle, ptr, self._lib), _display_name(c_name)
        )
        try:
            self._register(handle)
        except UsageError:
            handle._invalidate()
            raise
        logger.debug("created column family %r in %s", handle.name, self._path)
        return handle

    def drop_column_family(self, handle: ColumnFamilyHandle) -> None:
        """
        Drop a column family and all its data.

        The handle is consumed: it is closed whether or not the drop succeeds.
        """
        db = self._ptr()
        cf_ptr = self._cf_ptr(handle)
        err = c_void_p()
        try:
            self._lib.rocksdb_drop_column_family(db, cf_ptr, ctypes.byref(err))
        finally:
            handle.close()
        _check_error(err, self._lib)
        logger.debug("dropped column family %r from %s", handle.name, self._path)

    def _new_iterator(self, cf: ColumnFamilyHandle | None) -> DBIterator:
        db = self._ptr()
        cf_ptr = None if cf is None else self._cf_ptr(cf)
        with _ScopedReadOptions(self._lib) as read_options:
            if cf_ptr is None:
                ptr = self._lib.rocksdb_create_iterator(db, read_options.as_ptr())
            else:
                ptr = self._lib.rocksdb_create_iterator_cf(db, read_options.as_ptr(), cf_ptr)
        if not ptr:
            raise RocksDBError.from_message("failed to create iterator")

        cursor = DBIterator(self, NativeHandle(_native._CIterator, ptr, self._lib), cf)
        try:
            self._register(cursor)
        except UsageError:
            cursor._invalidate()
            raise
        return cursor

    def _positioned(self, cursor: DBIterator, direction: Direction) -> DBIteratorAdapter:
        direction = Direction(direction)
        try:
            if direction is Direction.FORWARD:
                cursor.seek_to_first()
            else:
                cursor.seek_to_last()
        except BaseException:
            cursor.close()
            raise
        return DBIteratorAdapter(cursor, direction)

    def iter(self, direction: Direction = Direction.FORWARD) -> DBIteratorAdapter:
        """
        Iterate over all key-value pairs in key order.

        Args:
            direction: Direction.FORWARD from the first key or Direction.REVERSE from the last

        Returns:
            Iterator of (key, value) tuples
        """
        return self._positioned(self._new_iterator(None), direction)

    def iter_cf(
        self, cf: ColumnFamilyHandle, direction: Direction = Direction.FORWARD
    ) -> DBIteratorAdapter:
        """Iterate over the key-value pairs of a column family in key order."""
        return self._positioned(self._new_iterator(cf), direction)

    def raw_iterator(self) -> DBIterator:
        """Create an unpositioned cursor for manual seeking."""
        return self._new_iterator(None)

    def raw_iterator_cf(self, cf: ColumnFamilyHandle) -> DBIterator:
        """Create an unpositioned cursor over a column family."""
        return self._new_iterator(cf)

    def close(self) -> None:
        """
        Close the database.

        Iterators and column family handles still open on this database are
        destroyed first and can no longer be used.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            iterators = list(self._iterators.values())
            column_families = list(self._column_families.values())
            self._iterators.clear()
            self._column_families.clear()

        # iterators first, then column family handles, then the database
        for handle in iterators:
            _release(handle, "rocksdb_iter_destroy")
        for handle in column_families:
            _release(handle, "rocksdb_column_family_handle_destroy")
        _release(self._handle, "rocksdb_close")
        logger.debug("closed database at %s", self._path)

    def __iter__(self) -> DBIteratorAdapter:
        return self.iter(Direction.FORWARD)

    def __enter__(self) -> DB:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> bool:
        self.close()
        return False

    def __del__(self) -> None:
        if not getattr(self, "_closed", True):
            self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"DB(path={self._path!r}, {state})"


def _display_name(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def open_db(path: PathLike, config: Config | None = None) -> DB:
    """
    Convenience function to open a database from a Config.

    Args:
        path: Path to the database directory
        config: Settings to open with; defaults to creating the database if missing

    Returns:
        DB instance
    """
    if config is None:
        config = Config(create_if_missing=True)
    with Options.from_config(config) as options:
        return DB.open(options, path, sync_writes=config.sync_writes)
