"""
In-process stand-in for librocksdb used by the test suite.

MockRocksDB implements the C entry points the bindings call, on top of real
ctypes memory, so error strings, value buffers and iterator slices are read
with ctypes.string_at exactly as they are from the real library. It keeps the
counters a leak checker would: live handles per kind, outstanding
allocations, calls per entry point and contract violations.
"""

import bisect
import ctypes
import functools
import gc
import unittest
from collections import Counter
from ctypes import POINTER, c_void_p

from rocksguard import install_library
from rocksguard._native import (
    _CColumnFamilyHandle,
    _CDatabase,
    _CIterator,
    _COptions,
    _CReadOptions,
    _CWriteOptions,
)


def _out(arg):
    """Return the ctypes object behind a byref() or pointer() out-parameter."""
    target = getattr(arg, "_obj", None)
    return target if target is not None else arg.contents


def _address(ptr):
    if ptr is None:
        return None
    if isinstance(ptr, int):
        return ptr
    return ctypes.cast(ptr, c_void_p).value


def _entry(method):
    name = method.__name__

    @functools.wraps(method)
    def wrapper(self, *args):
        self.calls[name] += 1
        if name in self._raises:
            self._raises.discard(name)
            raise RuntimeError(f"injected failure in {name}")
        if name in self._nulls:
            self._nulls.discard(name)
            return None
        if name in self._failures:
            self._set_error(args[-1], self._failures.pop(name))
            return None
        return method(self, *args)

    return wrapper


class _Store:
    """Contents of one database directory."""

    def __init__(self):
        self.families = {"default": {}}
        self.locked = False


class _Iterator:
    def __init__(self, family, fail_after=None, fail_message=None):
        self.items = sorted(family.items())
        self.keys = [key for key, _ in self.items]
        self.pos = -1
        self.error = None
        self.fail_after = fail_after
        self.fail_message = fail_message
        self.steps = 0
        self.slices = []

    @property
    def valid(self):
        return 0 <= self.pos < len(self.items)


class MockRocksDB:
    """Fake native RocksDB library with leak and misuse accounting."""

    def __init__(self):
        self.stores = {}
        self.calls = Counter()
        self.violations = []
        self.null_column_family_handles = set()
        self.last_write_sync = None
        self.last_error_if_wal_file_exists = None
        self.error_alongside_value = None

        self._handles = {}
        self._keepalive = []
        self._allocations = {}
        self._lists = {}
        self._failures = {}
        self._nulls = set()
        self._raises = set()
        self._iterator_failure = None

    # instrumentation

    def live_handles(self):
        return dict(Counter(kind.__name__ for kind, _ in self._handles.values()))

    def outstanding_allocations(self):
        return len(self._allocations)

    # failure injection, each one-shot

    def fail(self, entry_point, message):
        """Make the next call to ``entry_point`` report ``message`` through errptr."""
        self._failures[entry_point] = message

    def return_null(self, entry_point):
        self._nulls.add(entry_point)

    def raise_in(self, entry_point):
        self._raises.add(entry_point)

    def fail_iteration_after(self, steps, message):
        """The next iterator created goes invalid with ``message`` after ``steps`` moves."""
        self._iterator_failure = (steps, message)

    # memory

    def _malloc(self, data):
        buf = ctypes.create_string_buffer(data, len(data) + 1)
        address = ctypes.addressof(buf)
        self._allocations[address] = buf
        return address

    def _set_error(self, errptr, message):
        _out(errptr).value = self._malloc(message.encode("utf-8"))

    def _error(self, errptr, message):
        self._set_error(errptr, message)
        return None

    def _violation(self, message):
        self.violations.append(message)
        raise AssertionError(message)

    # handles

    def _new_handle(self, kind, state):
        # buffers are never released, so an address is never reused by a later handle
        buf = ctypes.create_string_buffer(1)
        self._keepalive.append(buf)
        address = ctypes.addressof(buf)
        state["address"] = address
        self._handles[address] = (kind, state)
        return ctypes.cast(address, POINTER(kind))

    def _state(self, ptr, kind, entry_point):
        entry = self._handles.get(_address(ptr))
        if entry is None:
            self._violation(f"{entry_point}: unknown or destroyed {kind.__name__} handle")
        if entry[0] is not kind:
            self._violation(f"{entry_point}: expected {kind.__name__}, got {entry[0].__name__}")
        return entry[1]

    def _destroy(self, ptr, kind, entry_point):
        state = self._state(ptr, kind, entry_point)
        del self._handles[state["address"]]
        return state

    def _family(self, cf, entry_point):
        state = self._state(cf, _CColumnFamilyHandle, entry_point)
        return state["db"]["store"].families.get(state["name"])

    # options

    @_entry
    def rocksdb_options_create(self):
        return self._new_handle(_COptions, {"create_if_missing": False, "error_if_exists": False})

    @_entry
    def rocksdb_options_destroy(self, options):
        self._destroy(options, _COptions, "rocksdb_options_destroy")

    @_entry
    def rocksdb_options_set_create_if_missing(self, options, value):
        self._state(options, _COptions, "rocksdb_options_set_create_if_missing")["create_if_missing"] = bool(value)

    @_entry
    def rocksdb_options_set_error_if_exists(self, options, value):
        self._state(options, _COptions, "rocksdb_options_set_error_if_exists")["error_if_exists"] = bool(value)

    @_entry
    def rocksdb_readoptions_create(self):
        return self._new_handle(_CReadOptions, {})

    @_entry
    def rocksdb_readoptions_destroy(self, options):
        self._destroy(options, _CReadOptions, "rocksdb_readoptions_destroy")

    @_entry
    def rocksdb_writeoptions_create(self):
        return self._new_handle(_CWriteOptions, {"sync": False})

    @_entry
    def rocksdb_writeoptions_destroy(self, options):
        self._destroy(options, _CWriteOptions, "rocksdb_writeoptions_destroy")

    @_entry
    def rocksdb_writeoptions_set_sync(self, options, value):
        self._state(options, _CWriteOptions, "rocksdb_writeoptions_set_sync")["sync"] = bool(value)

    # open / close

    def _open(self, options, name, errptr, read_only, cf_names=None):
        opts = self._state(options, _COptions, "open")
        path = bytes(name).decode("utf-8")
        store = self.stores.get(path)
        if store is None:
            if read_only or not opts["create_if_missing"]:
                return self._error(
                    errptr,
                    f"Invalid argument: {path}/CURRENT: does not exist (create_if_missing is false)",
                )
            store = self.stores[path] = _Store()
        elif opts["error_if_exists"] and not read_only:
            return self._error(errptr, f"Invalid argument: {path}: exists (error_if_exists is true)")

        if store.locked and not read_only:
            return self._error(errptr, f"IO error: While lock file: {path}/LOCK: Resource temporarily unavailable")

        requested = ["default"] if cf_names is None else cf_names
        unknown = [cf for cf in requested if cf not in store.families]
        if unknown:
            return self._error(errptr, f"Invalid argument: Column family not found: {unknown[0]}")
        unopened = [cf for cf in store.families if cf not in requested]
        if unopened and not read_only:
            return self._error(errptr, f"Invalid argument: Column families not opened: {', '.join(unopened)}")

        if not read_only:
            store.locked = True
        return self._new_handle(
            _CDatabase,
            {"path": path, "store": store, "read_only": read_only, "cf_handles": set(), "iterators": set()},
        )

    def _new_cf_handle(self, db_state, name):
        ptr = self._new_handle(_CColumnFamilyHandle, {"db": db_state, "name": name})
        db_state["cf_handles"].add(_address(ptr))
        return ptr

    @_entry
    def rocksdb_open(self, options, name, errptr):
        return self._open(options, name, errptr, read_only=False)

    @_entry
    def rocksdb_open_for_read_only(self, options, name, error_if_wal_file_exists, errptr):
        self.last_error_if_wal_file_exists = bool(error_if_wal_file_exists)
        return self._open(options, name, errptr, read_only=True)

    @_entry
    def rocksdb_open_column_families(self, options, name, count, names, cf_options, handles, errptr):
        cf_names = [names[i].decode("utf-8") for i in range(count)]
        for i in range(count):
            self._state(cf_options[i], _COptions, "rocksdb_open_column_families")
        db = self._open(options, name, errptr, read_only=False, cf_names=cf_names)
        if not db:
            return None
        db_state = self._state(db, _CDatabase, "rocksdb_open_column_families")
        for i, cf_name in enumerate(cf_names):
            if i not in self.null_column_family_handles:
                handles[i] = self._new_cf_handle(db_state, cf_name)
        return db

    @_entry
    def rocksdb_close(self, db):
        state = self._destroy(db, _CDatabase, "rocksdb_close")
        if state["iterators"]:
            self.violations.append(f"rocksdb_close: {len(state['iterators'])} iterators still alive")
        if state["cf_handles"]:
            self.violations.append(f"rocksdb_close: {len(state['cf_handles'])} column family handles still alive")
        if not state["read_only"]:
            state["store"].locked = False

    @_entry
    def rocksdb_list_column_families(self, options, name, lencf, errptr):
        self._state(options, _COptions, "rocksdb_list_column_families")
        path = bytes(name).decode("utf-8")
        store = self.stores.get(path)
        if store is None:
            return self._error(errptr, f"IO error: No such file or directory: While opening a file for sequentially reading: {path}/CURRENT")
        addresses = [self._malloc(cf.encode("utf-8")) for cf in store.families]
        array = (c_void_p * len(addresses))(*addresses)
        self._lists[ctypes.addressof(array)] = (array, addresses)
        _out(lencf).value = len(addresses)
        return ctypes.cast(array, POINTER(c_void_p))

    @_entry
    def rocksdb_list_column_families_destroy(self, names, length):
        entry = self._lists.pop(_address(names), None)
        if entry is None:
            self._violation("rocksdb_list_column_families_destroy: unknown list")
        for address in entry[1][:length]:
            self.rocksdb_free(address)

    # column families

    @_entry
    def rocksdb_create_column_family(self, db, options, name, errptr):
        db_state = self._state(db, _CDatabase, "rocksdb_create_column_family")
        self._state(options, _COptions, "rocksdb_create_column_family")
        cf_name = bytes(name).decode("utf-8")
        if db_state["read_only"]:
            return self._error(errptr, "Not implemented: Not supported operation in read only mode.")
        if cf_name in db_state["store"].families:
            return self._error(errptr, "Invalid argument: Column family already exists")
        db_state["store"].families[cf_name] = {}
        return self._new_cf_handle(db_state, cf_name)

    @_entry
    def rocksdb_drop_column_family(self, db, cf, errptr):
        db_state = self._state(db, _CDatabase, "rocksdb_drop_column_family")
        state = self._state(cf, _CColumnFamilyHandle, "rocksdb_drop_column_family")
        if state["name"] == "default":
            return self._error(errptr, "Invalid argument: Can't drop default column family")
        db_state["store"].families.pop(state["name"], None)
        return None

    @_entry
    def rocksdb_column_family_handle_destroy(self, cf):
        state = self._destroy(cf, _CColumnFamilyHandle, "rocksdb_column_family_handle_destroy")
        state["db"]["cf_handles"].discard(state["address"])

    # reads and writes

    def _write(self, db, write_options, family, errptr, entry_point):
        db_state = self._state(db, _CDatabase, entry_point)
        self.last_write_sync = self._state(write_options, _CWriteOptions, entry_point)["sync"]
        if db_state["read_only"]:
            return self._error(errptr, "Not implemented: Not supported operation in read only mode.")
        if family is None:
            return self._error(errptr, "Invalid argument: Column family has been dropped")
        return family

    def _read(self, db, read_options, family, key, keylen, vallen, errptr, entry_point):
        self._state(db, _CDatabase, entry_point)
        self._state(read_options, _CReadOptions, entry_point)
        _out(vallen).value = 0
        if family is None:
            return self._error(errptr, "Invalid argument: Column family has been dropped")
        value = family.get(bytes(key[:keylen]))
        if value is None:
            return None
        _out(vallen).value = len(value)
        address = self._malloc(value)
        if self.error_alongside_value is not None:
            self._set_error(errptr, self.error_alongside_value)
            self.error_alongside_value = None
        return address

    @_entry
    def rocksdb_put(self, db, write_options, key, keylen, val, vallen, errptr):
        family = self._write(db, write_options, self._state(db, _CDatabase, "rocksdb_put")["store"].families["default"], errptr, "rocksdb_put")
        if family is not None:
            family[bytes(key[:keylen])] = bytes(val[:vallen])

    @_entry
    def rocksdb_put_cf(self, db, write_options, cf, key, keylen, val, vallen, errptr):
        family = self._write(db, write_options, self._family(cf, "rocksdb_put_cf"), errptr, "rocksdb_put_cf")
        if family is not None:
            family[bytes(key[:keylen])] = bytes(val[:vallen])

    @_entry
    def rocksdb_get(self, db, read_options, key, keylen, vallen, errptr):
        family = self._state(db, _CDatabase, "rocksdb_get")["store"].families["default"]
        return self._read(db, read_options, family, key, keylen, vallen, errptr, "rocksdb_get")

    @_entry
    def rocksdb_get_cf(self, db, read_options, cf, key, keylen, vallen, errptr):
        family = self._family(cf, "rocksdb_get_cf")
        return self._read(db, read_options, family, key, keylen, vallen, errptr, "rocksdb_get_cf")

    @_entry
    def rocksdb_delete(self, db, write_options, key, keylen, errptr):
        family = self._write(db, write_options, self._state(db, _CDatabase, "rocksdb_delete")["store"].families["default"], errptr, "rocksdb_delete")
        if family is not None:
            family.pop(bytes(key[:keylen]), None)

    @_entry
    def rocksdb_delete_cf(self, db, write_options, cf, key, keylen, errptr):
        family = self._write(db, write_options, self._family(cf, "rocksdb_delete_cf"), errptr, "rocksdb_delete_cf")
        if family is not None:
            family.pop(bytes(key[:keylen]), None)

    @_entry
    def rocksdb_free(self, ptr):
        address = _address(ptr)
        if self._allocations.pop(address, None) is None:
            self._violation(f"rocksdb_free: pointer {address!r} was not allocated by RocksDB or was already freed")

    # iterators

    def _new_iterator(self, db, read_options, family, entry_point):
        db_state = self._state(db, _CDatabase, entry_point)
        self._state(read_options, _CReadOptions, entry_point)
        fail_after, fail_message = self._iterator_failure or (None, None)
        self._iterator_failure = None
        cursor = _Iterator(family or {}, fail_after, fail_message)
        ptr = self._new_handle(_CIterator, {"db": db_state, "cursor": cursor})
        db_state["iterators"].add(_address(ptr))
        return ptr

    def _cursor(self, it, entry_point):
        return self._state(it, _CIterator, entry_point)["cursor"]

    @_entry
    def rocksdb_create_iterator(self, db, read_options):
        family = self._state(db, _CDatabase, "rocksdb_create_iterator")["store"].families["default"]
        return self._new_iterator(db, read_options, family, "rocksdb_create_iterator")

    @_entry
    def rocksdb_create_iterator_cf(self, db, read_options, cf):
        return self._new_iterator(db, read_options, self._family(cf, "rocksdb_create_iterator_cf"), "rocksdb_create_iterator_cf")

    @_entry
    def rocksdb_iter_destroy(self, it):
        state = self._destroy(it, _CIterator, "rocksdb_iter_destroy")
        state["db"]["iterators"].discard(state["address"])

    @_entry
    def rocksdb_iter_valid(self, it):
        return 1 if self._cursor(it, "rocksdb_iter_valid").valid else 0

    @_entry
    def rocksdb_iter_seek_to_first(self, it):
        cursor = self._cursor(it, "rocksdb_iter_seek_to_first")
        cursor.pos, cursor.error = 0, None

    @_entry
    def rocksdb_iter_seek_to_last(self, it):
        cursor = self._cursor(it, "rocksdb_iter_seek_to_last")
        cursor.pos, cursor.error = len(cursor.items) - 1, None

    @_entry
    def rocksdb_iter_seek(self, it, key, keylen):
        cursor = self._cursor(it, "rocksdb_iter_seek")
        cursor.pos, cursor.error = bisect.bisect_left(cursor.keys, bytes(key[:keylen])), None

    @_entry
    def rocksdb_iter_seek_for_prev(self, it, key, keylen):
        cursor = self._cursor(it, "rocksdb_iter_seek_for_prev")
        cursor.pos, cursor.error = bisect.bisect_right(cursor.keys, bytes(key[:keylen])) - 1, None

    def _step(self, it, delta, entry_point):
        cursor = self._cursor(it, entry_point)
        if not cursor.valid:
            self._violation(f"{entry_point}: iterator is not valid")
        cursor.pos += delta
        cursor.steps += 1
        if cursor.fail_after is not None and cursor.steps >= cursor.fail_after:
            cursor.pos = len(cursor.items)
            cursor.error = cursor.fail_message

    @_entry
    def rocksdb_iter_next(self, it):
        self._step(it, 1, "rocksdb_iter_next")

    @_entry
    def rocksdb_iter_prev(self, it):
        self._step(it, -1, "rocksdb_iter_prev")

    def _slice(self, it, length, index, entry_point):
        cursor = self._cursor(it, entry_point)
        if not cursor.valid:
            self._violation(f"{entry_point}: iterator is not valid")
        data = cursor.items[cursor.pos][index]
        buf = ctypes.create_string_buffer(data, len(data) + 1)
        cursor.slices.append(buf)
        _out(length).value = len(data)
        return ctypes.addressof(buf)

    @_entry
    def rocksdb_iter_key(self, it, klen):
        return self._slice(it, klen, 0, "rocksdb_iter_key")

    @_entry
    def rocksdb_iter_value(self, it, vlen):
        return self._slice(it, vlen, 1, "rocksdb_iter_value")

    @_entry
    def rocksdb_iter_get_error(self, it, errptr):
        cursor = self._cursor(it, "rocksdb_iter_get_error")
        if cursor.error:
            self._set_error(errptr, cursor.error)


class MockRocksDBTestCase(unittest.TestCase):
    """Installs a fresh MockRocksDB as the active library for each test."""

    def setUp(self):
        self.lib = MockRocksDB()
        self._previous_lib = install_library(self.lib)
        self.test_db_path = f"/tmp/rocksguard_test/{self._testMethodName}"

    def tearDown(self):
        install_library(self._previous_lib)

    def assertNoLeaks(self):
        gc.collect()
        self.assertEqual(self.lib.live_handles(), {})
        self.assertEqual(self.lib.outstanding_allocations(), 0)
        self.assertEqual(self.lib.violations, [])
