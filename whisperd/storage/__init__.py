"""
Whisper Storage Module

Async key/value persistence used by identity, keys, the message
store and the router's seen-set.
"""

from .kv import (
    DEFAULT_STORAGE_TIMEOUT,
    KeyValueStore,
    MemoryKeyValueStore,
    SqliteKeyValueStore,
    StorageError,
    record_int,
    storage_key,
    with_timeout,
)

__all__ = [
    'DEFAULT_STORAGE_TIMEOUT',
    'KeyValueStore',
    'MemoryKeyValueStore',
    'SqliteKeyValueStore',
    'StorageError',
    'record_int',
    'storage_key',
    'with_timeout',
]
