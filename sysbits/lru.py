"""A fixed-capacity least-recently-used cache keyed by pairs of 32-bit integers."""

from __future__ import annotations

import threading
from collections import OrderedDict

_DEFAULT_HASH_SIZE = 1024
_KEY_LIMIT = 1 << 32


def _check_key(key1, key2):
    for value in (key1, key2):
        if not 0 <= value < _KEY_LIMIT:
            raise ValueError(f"key {value} is not an unsigned 32-bit integer")
    return key1, key2


class LRUCache:
    """Holds at most ``size`` entries; setting a new key when full evicts
    the least recently used one. Reads and writes refresh an entry.

    The stored data is copied on every set. All operations are thread-safe.
    """

    def __init__(self, size, hash_size=_DEFAULT_HASH_SIZE):
        if size < 2:
            raise ValueError("an LRU cache needs room for at least two entries")
        if hash_size < 1:
            hash_size = _DEFAULT_HASH_SIZE
        self.size = size
        self.hash_size = hash_size
        # Least recently used first, most recently used last.
        self._entries: OrderedDict[tuple[int, int], bytes] = OrderedDict()
        self._lock = threading.Lock()

    def _store(self, key1, key2, data):
        key = _check_key(key1, key2)
        payload = bytes(data)
        if key in self._entries:
            self._entries[key] = payload
            self._entries.move_to_end(key)
            return
        if len(self._entries) >= self.size:
            self._entries.popitem(last=False)
        self._entries[key] = payload

    def _fetch(self, key1, key2):
        key = _check_key(key1, key2)
        data = self._entries.get(key)
        if data is not None:
            self._entries.move_to_end(key)
        return data

    def set(self, key1, key2, data):
        """Store a copy of data under (key1, key2)."""
        with self._lock:
            self._store(key1, key2, data)

    def set_many(self, items):
        """Store each (key1, key2, data) triple in order."""
        with self._lock:
            for key1, key2, data in items:
                self._store(key1, key2, data)

    def get(self, key1, key2):
        """The data stored under (key1, key2), or None."""
        with self._lock:
            return self._fetch(key1, key2)

    def get_many(self, keys):
        """Look up each (key1, key2) pair; returns data or None per key.

        Keys are visited last to first, so the first key ends up the most
        recently used.
        """
        keys = list(keys)
        with self._lock:
            found = [self._fetch(key1, key2) for key1, key2 in reversed(keys)]
        found.reverse()
        return found

    def delete(self, key1, key2):
        """Remove (key1, key2); True if it was present."""
        key = _check_key(key1, key2)
        with self._lock:
            return self._entries.pop(key, None) is not None

    def keys(self):
        """Keys from most to least recently used."""
        with self._lock:
            return list(reversed(self._entries))

    def __contains__(self, key):
        with self._lock:
            return tuple(key) in self._entries

    def __len__(self):
        with self._lock:
            return len(self._entries)