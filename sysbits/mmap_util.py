"""Memory-mapped files and a fixed-size record array stored in one."""

from __future__ import annotations

import mmap
import os
import struct

# padding_1, version, max_num, cur_num, mmap_size, item_size, padding_2
_HEADER = struct.Struct("=iiiiqii")
_CUR_NUM = struct.Struct("=i")
_CUR_NUM_OFFSET = 12
HEADER_SIZE = _HEADER.size


class MmapFileError(OSError):
    """A mapped-file operation failed at a given stage."""

    OPEN_FAIL = -1
    STAT_FAIL = -2
    MMAP_FAIL = -3
    TRUNC_FAIL = -4

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def create_or_truncate(path, size):
    """Make sure the file exists and is at least size bytes long."""
    try:
        current = os.stat(path).st_size
    except FileNotFoundError:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        except OSError as exc:
            raise MmapFileError(MmapFileError.OPEN_FAIL, f"cannot create {path}") from exc
        os.close(fd)
        current = 0
    except OSError as exc:
        raise MmapFileError(MmapFileError.STAT_FAIL, f"cannot stat {path}") from exc

    if current < size:
        try:
            os.truncate(path, size)
        except OSError as exc:
            raise MmapFileError(MmapFileError.TRUNC_FAIL, f"cannot resize {path}") from exc


class MappedFile:
    """A whole file mapped shared into memory."""

    def __init__(self, mm, size):
        self.mm = mm
        self.size = size

    @classmethod
    def open(cls, path, writable=False):
        """Map an existing file, read-only or read-write."""
        flags = os.O_RDWR if writable else os.O_RDONLY
        try:
            fd = os.open(path, flags)
        except OSError as exc:
            raise MmapFileError(MmapFileError.OPEN_FAIL, f"cannot open {path}") from exc
        try:
            try:
                size = os.fstat(fd).st_size
            except OSError as exc:
                raise MmapFileError(MmapFileError.STAT_FAIL, f"cannot stat {path}") from exc
            access = mmap.ACCESS_WRITE if writable else mmap.ACCESS_READ
            try:
                mm = mmap.mmap(fd, size, access=access)
            except (OSError, ValueError) as exc:
                raise MmapFileError(MmapFileError.MMAP_FAIL, f"cannot map {path}") from exc
        finally:
            os.close(fd)
        return cls(mm, size)

    @property
    def closed(self):
        return self.mm is None

    def close(self):
        """Unmap the file; safe to call more than once."""
        if self.mm is not None:
            self.mm.close()
        self.mm = None
        self.size = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class MappedFileArray:
    """A file holding a small header followed by fixed-size items.

    Views returned by item() must be released before close().
    """

    def __init__(self, mapped):
        self._file = mapped

    @classmethod
    def create(cls, path, item_size, max_num):
        """Create (or grow) the file and write a fresh header."""
        if item_size < 0 or max_num < 0:
            raise ValueError("item_size and max_num must not be negative")
        size = HEADER_SIZE + item_size * max_num
        create_or_truncate(path, size)
        mapped = MappedFile.open(path, writable=True)
        version = _HEADER.unpack_from(mapped.mm, 0)[1]
        _HEADER.pack_into(mapped.mm, 0, 0, version, max_num, 0, size, item_size, 0)
        return cls(mapped)

    @classmethod
    def open(cls, path, writable=False):
        """Map an existing array file."""
        mapped = MappedFile.open(path, writable)
        if mapped.size < HEADER_SIZE:
            mapped.close()
            raise MmapFileError(MmapFileError.MMAP_FAIL, f"{path} is too small for an array header")
        return cls(mapped)

    def _fields(self):
        return _HEADER.unpack_from(self._file.mm, 0)

    @property
    def version(self):
        return self._fields()[1]

    @property
    def max_num(self):
        return self._fields()[2]

    @property
    def cur_num(self):
        return self._fields()[3]

    @cur_num.setter
    def cur_num(self, value):
        _CUR_NUM.pack_into(self._file.mm, _CUR_NUM_OFFSET, value)

    @property
    def mmap_size(self):
        return self._fields()[4]

    @property
    def item_size(self):
        return self._fields()[5]

    def item(self, index):
        """A memoryview over the item at index."""
        _, _, max_num, _, _, item_size, _ = self._fields()
        if not 0 <= index < max_num:
            raise IndexError(f"item index {index} not in [0, {max_num})")
        start = HEADER_SIZE + index * item_size
        return memoryview(self._file.mm)[start:start + item_size]

    def close(self):
        """Unmap the array file."""
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()