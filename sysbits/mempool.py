"""A thread-safe pool of fixed-size memory slots carved out of larger chunks."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

_MIN_BLOCK_SIZE = 2
_MAX_UNITS = 0xFFFF


class _Chunk:
    """A run of equally sized units with a LIFO list of free ones."""

    def __init__(self, block_size, units):
        self.memory = bytearray(block_size * units)
        self.block_size = block_size
        self.units = units
        # Top of the stack is the last element; unit 0 comes out first.
        self.free_units = list(range(units - 1, -1, -1))

    @property
    def all_free(self):
        return len(self.free_units) == self.units

    def take(self):
        index = self.free_units.pop()
        start = index * self.block_size
        return index, memoryview(self.memory)[start:start + self.block_size]


@dataclass(eq=False)
class Slot:
    """One fixed-size piece of pool memory."""

    memory: memoryview
    _chunk: _Chunk = field(repr=False)
    _index: int
    _live: bool = field(default=True, repr=False)

    def __len__(self):
        return len(self.memory)


class MemoryCache:
    """Hands out ``block_size``-byte slots.

    The first chunk holds ``block_num`` slots; when every chunk is full a
    new chunk of ``dynamic_num`` slots is added in front. A front chunk that
    becomes entirely free is released, but the last remaining chunk never is.
    """

    def __init__(self, block_size, block_num, dynamic_num):
        if not 0 <= block_num <= _MAX_UNITS:
            raise ValueError(f"block_num must be in [0, {_MAX_UNITS}]")
        if not 1 <= dynamic_num <= _MAX_UNITS:
            raise ValueError(f"dynamic_num must be in [1, {_MAX_UNITS}]")
        self.block_size = max(block_size, _MIN_BLOCK_SIZE)
        self.block_num = block_num
        self.dynamic_num = dynamic_num
        self._lock = threading.Lock()
        self._chunks = [_Chunk(self.block_size, block_num)]
        self._closed = False

    @property
    def chunk_count(self):
        with self._lock:
            return len(self._chunks)

    @property
    def capacity(self):
        """Total slots across all chunks."""
        with self._lock:
            return sum(chunk.units for chunk in self._chunks)

    @property
    def free_count(self):
        """Slots not currently handed out."""
        with self._lock:
            return sum(len(chunk.free_units) for chunk in self._chunks)

    def allocate(self):
        """Take a free slot, growing the pool if every chunk is full."""
        with self._lock:
            if self._closed:
                raise ValueError("memory cache is closed")
            if not self._chunks:
                self._chunks.append(_Chunk(self.block_size, self.block_num or self.dynamic_num))
            chunk = next((c for c in self._chunks if c.free_units), None)
            if chunk is None:
                chunk = _Chunk(self.block_size, self.dynamic_num)
                self._chunks.insert(0, chunk)
            index, view = chunk.take()
            return Slot(view, chunk, index)

    def free(self, slot):
        """Give a slot back to the pool."""
        with self._lock:
            if self._closed:
                raise ValueError("memory cache is closed")
            chunk = slot._chunk
            if not any(c is chunk for c in self._chunks):
                raise ValueError("slot does not belong to this memory cache")
            if not slot._live:
                raise ValueError("slot was already freed")
            slot._live = False
            chunk.free_units.append(slot._index)
            if chunk.all_free and self._chunks[0] is chunk and len(self._chunks) > 1:
                self._chunks.pop(0)

    def close(self):
        """Release every chunk; the cache cannot be used afterwards."""
        with self._lock:
            self._chunks.clear()
            self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()