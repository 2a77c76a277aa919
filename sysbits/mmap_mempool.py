"""A bump allocator over memory-mapped blocks, optionally backed by files."""

from __future__ import annotations

import mmap
import os
import struct
from dataclasses import dataclass

# ref, last, recycle
_BLOCK_HEADER = struct.Struct("=i4xQQ")
# ref, usable_size
_CONTROL = struct.Struct("=i4xQ")
# next, usable_size
_RECYCLE = struct.Struct("=QQ")
_ALIGNMENT = 8
_NO_RECYCLE = 0xFFFF_FFFF_FFFF_FFFF


def _align(value, alignment=_ALIGNMENT):
    return (value + alignment - 1) & ~(alignment - 1)


@dataclass(frozen=True)
class Allocation:
    """A piece of pool memory: its block and its offset in the block's data."""

    block_idx: int
    offset: int
    size: int


@dataclass(frozen=True)
class AllocInfo:
    """Where an allocation lives and how many bytes it may use."""

    block_idx: int
    usable_size: int
    offset: int


class MmapMemPool:
    """Allocates from up to block_max_num blocks of block_size bytes each.

    With a tag, block i lives in the file "<tag>.<i>" and survives the pool;
    without one, blocks are anonymous memory.
    """

    def __init__(self, block_size, block_max_num, tag=None):
        if block_size < 0 or block_max_num < 0:
            raise ValueError("block_size and block_max_num must not be negative")
        self.block_size = block_size + _CONTROL.size
        self.block_max_num = block_max_num
        self.tag = os.fspath(tag) if tag is not None else ""
        if self.tag:
            parent = os.path.dirname(self.tag)
            if parent:
                os.makedirs(parent, mode=0o755, exist_ok=True)
        self._blocks: list[mmap.mmap | None] = [None] * block_max_num

    @property
    def _map_size(self):
        return _BLOCK_HEADER.size + self.block_size

    def _block_path(self, idx):
        return f"{self.tag}.{idx}"

    def _unmap(self, idx):
        mm = self._blocks[idx]
        self._blocks[idx] = None
        if mm is not None:
            mm.close()

    def load(self):
        """Map every existing block file; returns how many were found."""
        if not self.tag:
            return 0
        loaded = 0
        for idx in reversed(range(self.block_max_num)):
            self._unmap(idx)
            try:
                fd = os.open(self._block_path(idx), os.O_RDWR)
            except OSError:
                continue
            try:
                if os.fstat(fd).st_size < self._map_size:
                    os.ftruncate(fd, self._map_size)
                self._blocks[idx] = mmap.mmap(fd, self._map_size)
            finally:
                os.close(fd)
            loaded += 1
        return loaded

    def sync(self):
        """Flush file-backed blocks to disk."""
        if not self.tag:
            return
        for mm in self._blocks:
            if mm is not None:
                mm.flush()

    def _open_block(self, idx):
        if self.tag:
            fd = os.open(self._block_path(idx), os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o644)
            try:
                os.ftruncate(fd, self._map_size)
                mm = mmap.mmap(fd, self._map_size)
            finally:
                os.close(fd)
        else:
            mm = mmap.mmap(-1, self._map_size)
        _BLOCK_HEADER.pack_into(mm, 0, 0, 0, _NO_RECYCLE)
        self._blocks[idx] = mm
        return mm

    def alloc(self, size):
        """Carve size bytes from the first block with room for them."""
        if size < 0:
            raise ValueError("size must not be negative")
        need = _align(size + _CONTROL.size)
        usable = need - _CONTROL.size
        if need <= self.block_size:
            for idx in range(self.block_max_num):
                mm = self._blocks[idx] or self._open_block(idx)
                ref, last, recycle = _BLOCK_HEADER.unpack_from(mm, 0)
                if self.block_size - last >= need:
                    _CONTROL.pack_into(mm, _BLOCK_HEADER.size + last, 1, usable)
                    _BLOCK_HEADER.pack_into(mm, 0, ref + 1, last + need, recycle)
                    return Allocation(idx, last + _CONTROL.size, size)
        raise MemoryError(f"no block has room for {size} bytes")

    def calloc(self, size):
        """Allocate size bytes and zero them."""
        allocation = self.alloc(size)
        mm, pos = self._locate(allocation)
        start = pos + _CONTROL.size
        mm[start:start + size] = bytes(size)
        return allocation

    def _locate(self, allocation):
        """The block mapping and the absolute position of the control record."""
        idx, offset = allocation.block_idx, allocation.offset
        if 0 <= idx < self.block_max_num:
            mm = self._blocks[idx]
            if mm is not None and _CONTROL.size <= offset < self.block_size:
                return mm, _BLOCK_HEADER.size + offset - _CONTROL.size
        raise ValueError("allocation does not belong to this pool")

    def free(self, allocation):
        """Push the allocation onto its block's recycle list."""
        mm, pos = self._locate(allocation)
        _, usable = _CONTROL.unpack_from(mm, pos)
        ref, last, recycle = _BLOCK_HEADER.unpack_from(mm, 0)
        _RECYCLE.pack_into(mm, pos, recycle, usable)
        _BLOCK_HEADER.pack_into(mm, 0, ref, last, pos - _BLOCK_HEADER.size)

    def ref(self, allocation):
        """Add a reference to the allocation."""
        mm, pos = self._locate(allocation)
        count, usable = _CONTROL.unpack_from(mm, pos)
        _CONTROL.pack_into(mm, pos, count + 1, usable)

    def unref(self, allocation):
        """Drop a reference; the allocation is freed when none remain."""
        mm, pos = self._locate(allocation)
        count, usable = _CONTROL.unpack_from(mm, pos)
        count -= 1
        _CONTROL.pack_into(mm, pos, count, usable)
        if count < 1:
            self.free(allocation)

    def ref_count(self, allocation):
        """The allocation's current reference count."""
        mm, pos = self._locate(allocation)
        return _CONTROL.unpack_from(mm, pos)[0]

    def usable_size(self, allocation):
        """Bytes the allocation may use (its size rounded up to the alignment)."""
        mm, pos = self._locate(allocation)
        return _CONTROL.unpack_from(mm, pos)[1]

    def alloc_info(self, allocation):
        """Block index, usable size and data offset of the allocation."""
        mm, pos = self._locate(allocation)
        usable = _CONTROL.unpack_from(mm, pos)[1]
        return AllocInfo(allocation.block_idx, usable, allocation.offset)

    def recycled(self, block_idx):
        """Yield (offset, usable_size) for each freed allocation in a block, newest first."""
        if not 0 <= block_idx < self.block_max_num:
            raise IndexError(f"block index {block_idx} not in [0, {self.block_max_num})")
        mm = self._blocks[block_idx]
        if mm is None:
            return
        entry = _BLOCK_HEADER.unpack_from(mm, 0)[2]
        for _ in range(self.block_size // _RECYCLE.size):
            if entry == _NO_RECYCLE or entry + _RECYCLE.size > self.block_size:
                return
            nxt, usable = _RECYCLE.unpack_from(mm, _BLOCK_HEADER.size + entry)
            yield entry + _CONTROL.size, usable
            entry = nxt

    def read(self, allocation, size=None):
        """Copy bytes out of the allocation (its requested size by default)."""
        mm, pos = self._locate(allocation)
        usable = _CONTROL.unpack_from(mm, pos)[1]
        size = allocation.size if size is None else size
        if not 0 <= size <= usable:
            raise ValueError(f"cannot read {size} bytes from {usable} usable")
        start = pos + _CONTROL.size
        return bytes(mm[start:start + size])

    def write(self, allocation, data, pos=0):
        """Copy data into the allocation at pos."""
        mm, control = self._locate(allocation)
        usable = _CONTROL.unpack_from(mm, control)[1]
        data = bytes(data)
        if pos < 0 or pos + len(data) > usable:
            raise ValueError(f"{len(data)} bytes at {pos} exceed {usable} usable")
        start = control + _CONTROL.size + pos
        mm[start:start + len(data)] = data

    def close(self):
        """Unmap every block."""
        for idx in range(self.block_max_num):
            self._unmap(idx)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()