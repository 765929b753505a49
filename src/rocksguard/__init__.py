"""
rocksguard

Python bindings for RocksDB with checked native handle lifetimes.

Copyright (C) rocksguard authors
Licensed under the Mozilla Public License, v. 2.0
"""

import logging

from ._native import LIBRARY_ENV_VAR, install_library, load_library
from .rocksguard import (
    DB,
    ColumnFamilyHandle,
    Config,
    DBIterator,
    DBIteratorAdapter,
    Direction,
    NativeHandle,
    Options,
    RocksDBError,
    UsageError,
    open_db,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
__all__ = [
    "DB",
    "ColumnFamilyHandle",
    "Config",
    "DBIterator",
    "DBIteratorAdapter",
    "Direction",
    "NativeHandle",
    "Options",
    "RocksDBError",
    "UsageError",
    "open_db",
    "load_library",
    "install_library",
    "LIBRARY_ENV_VAR",
]
