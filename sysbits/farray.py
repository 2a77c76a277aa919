"""Fixed-size element arrays and element pools stored in memory-mapped files."""

from __future__ import annotations

import errno
import mmap
import os
import struct

# elt_size, nelts, nalloc
_ARRAY_HEADER = struct.Struct("=QQQ")
# elt_size, nelts, nalloc, free_head, free_tail
_POOL_HEADER = struct.Struct("=IIIII")
# len, next
_FREE_INFO = struct.Struct("=II")
_UINT32_LIMIT = 1 << 32


def _map_new(path, length):
    """Create or resize a file to exactly length bytes and map it read-write."""
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        os.ftruncate(fd, length)
        return mmap.mmap(fd, length, access=mmap.ACCESS_WRITE)
    finally:
        os.close(fd)


def _map_existing(path, writable):
    """Map the whole of an existing, non-empty file."""
    fd = os.open(path, os.O_RDWR if writable else os.O_RDONLY)
    try:
        size = os.fstat(fd).st_size
        if size < 1:
            raise OSError(errno.EBADF, "file is empty", os.fspath(path))
        access = mmap.ACCESS_WRITE if writable else mmap.ACCESS_READ
        return mmap.mmap(fd, size, access=access)
    finally:
        os.close(fd)


class _MappedElements:
    """Shared behaviour of a header followed by elt_size-byte elements."""

    _header: struct.Struct

    def __init__(self, mm):
        self._mm = mm

    @property
    def closed(self):
        return self._mm is None

    def _map(self):
        if self._mm is None:
            raise ValueError("mapping is closed")
        return self._mm

    def _fields(self):
        return self._header.unpack_from(self._map(), 0)

    def _set_field(self, position, value):
        fields = list(self._fields())
        fields[position] = value
        self._header.pack_into(self._map(), 0, *fields)

    def _element_span(self, index):
        mm = self._map()
        elt_size, nalloc = self.elt_size, self.nalloc
        if not 0 <= index < nalloc:
            raise IndexError(f"element index {index} not in [0, {nalloc})")
        start = self._header.size + index * elt_size
        end = start + elt_size
        if end > len(mm):
            raise IndexError(f"element {index} lies beyond the end of the file")
        return start, end

    def __getitem__(self, index):
        start, end = self._element_span(index)
        return bytes(self._mm[start:end])

    def __setitem__(self, index, data):
        start, end = self._element_span(index)
        data = bytes(data)
        if len(data) > end - start:
            raise ValueError(f"data of {len(data)} bytes does not fit an element of {end - start}")
        self._mm[start:start + len(data)] = data

    def __len__(self):
        return self.nalloc

    def _flush(self):
        self._map().flush()

    def _unmap(self):
        if self._mm is not None:
            self._mm.close()
        self._mm = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._unmap()


class FileArray(_MappedElements):
    """An array of block_num elements of block_size bytes kept in a file."""

    _header = _ARRAY_HEADER

    @classmethod
    def create(cls, path, block_size, block_num):
        """Create (or resize) the file and write an empty array header."""
        if block_size < 0 or block_num < 0:
            raise ValueError("block_size and block_num must not be negative")
        mm = _map_new(path, _ARRAY_HEADER.size + block_size * block_num)
        _ARRAY_HEADER.pack_into(mm, 0, block_size, 0, block_num)
        return cls(mm)

    @classmethod
    def load(cls, path, writable=False):
        """Map an existing array file, read-only or read-write."""
        mm = _map_existing(path, writable)
        if len(mm) < _ARRAY_HEADER.size:
            mm.close()
            raise ValueError(f"{os.fspath(path)} is too small for an array header")
        return cls(mm)

    def sync(self):
        """Flush the mapping to its file."""
        self._flush()

    def close(self):
        """Unmap the file; safe to call more than once."""
        self._unmap()

    @property
    def elt_size(self):
        return self._fields()[0]

    @property
    def nelts(self):
        return self._fields()[1]

    @nelts.setter
    def nelts(self, value):
        self._set_field(1, value)

    @property
    def nalloc(self):
        return self._fields()[2]


class FileMemPool(_MappedElements):
    """A pool of nalloc elements of elt_size bytes kept in a file.

    A fresh pool describes all its elements as one free run starting at 0.
    """

    _header = _POOL_HEADER

    @classmethod
    def create(cls, path, elt_size, nalloc):
        """Create (or resize) the file and write a fresh pool header."""
        if not 0 <= elt_size < _UINT32_LIMIT or not 0 <= nalloc < _UINT32_LIMIT:
            raise ValueError("elt_size and nalloc must be unsigned 32-bit integers")
        if elt_size * nalloc < _FREE_INFO.size:
            raise ValueError("pool is too small to hold its free-list head")
        mm = _map_new(path, _POOL_HEADER.size + elt_size * nalloc)
        _POOL_HEADER.pack_into(mm, 0, elt_size, 0, nalloc, 0, 0)
        _FREE_INFO.pack_into(mm, _POOL_HEADER.size, nalloc, nalloc)
        return cls(mm)

    @classmethod
    def load(cls, path):
        """Map an existing pool file read-write."""
        mm = _map_existing(path, True)
        if len(mm) < _POOL_HEADER.size:
            mm.close()
            raise ValueError(f"{os.fspath(path)} is too small for a pool header")
        return cls(mm)

    def sync(self):
        """Flush the mapping to its file."""
        self._flush()

    def close(self):
        """Unmap the file; safe to call more than once."""
        self._unmap()

    @property
    def elt_size(self):
        return self._fields()[0]

    @property
    def nelts(self):
        return self._fields()[1]

    @nelts.setter
    def nelts(self, value):
        self._set_field(1, value)

    @property
    def nalloc(self):
        return self._fields()[2]

    @property
    def free_head(self):
        return self._fields()[3]

    @property
    def free_tail(self):
        return self._fields()[4]

    def free_info(self, index):
        """The (len, next) free-run record stored at the start of an element."""
        start, _ = self._element_span(index)
        return _FREE_INFO.unpack_from(self._mm, start)