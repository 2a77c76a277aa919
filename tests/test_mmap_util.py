import pytest

from sysbits.mmap_util import (
    MappedFile,
    MappedFileArray,
    MmapFileError,
    create_or_truncate,
)


def test_create_or_truncate_creates(tmp_path):
    path = tmp_path / "f.bin"
    create_or_truncate(str(path), 100)
    assert path.stat().st_size == 100


def test_create_or_truncate_grows(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"abc")
    create_or_truncate(str(path), 10)
    assert path.read_bytes() == b"abc" + b"\0" * 7


def test_create_or_truncate_never_shrinks(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"z" * 200)
    create_or_truncate(str(path), 50)
    assert path.read_bytes() == b"z" * 200


def test_create_or_truncate_open_fail(tmp_path):
    with pytest.raises(MmapFileError) as info:
        create_or_truncate(str(tmp_path / "no" / "f.bin"), 10)
    assert info.value.code == MmapFileError.OPEN_FAIL


def test_mapped_file_readonly(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"hello world")
    with MappedFile.open(str(path)) as mapped:
        assert mapped.size == len(b"hello world")
        assert mapped.mm[:] == b"hello world"
        with pytest.raises(TypeError):
            mapped.mm[0:1] = b"H"


def test_mapped_file_writable_persists(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"hello")
    with MappedFile.open(str(path), writable=True) as mapped:
        mapped.mm[0:1] = b"J"
    assert path.read_bytes() == b"Jello"


def test_mapped_file_close_resets(tmp_path):
    path = tmp_path / "f.bin"
    path.write_bytes(b"data")
    mapped = MappedFile.open(str(path))
    mapped.close()
    mapped.close()
    assert mapped.size == 0
    assert mapped.closed is True


def test_mapped_file_missing(tmp_path):
    with pytest.raises(MmapFileError) as info:
        MappedFile.open(str(tmp_path / "missing"))
    assert info.value.code == MmapFileError.OPEN_FAIL


def test_mapped_file_empty_fails_to_map(tmp_path):
    path = tmp_path / "empty"
    path.write_bytes(b"")
    with pytest.raises(MmapFileError) as info:
        MappedFile.open(str(path))
    assert info.value.code == MmapFileError.MMAP_FAIL


def test_array_create_header(tmp_path):
    path = tmp_path / "arr.bin"
    with MappedFileArray.create(str(path), 8, 4) as arr:
        assert arr.max_num == 4
        assert arr.item_size == 8
        assert arr.cur_num == 0
        assert arr.version == 0
        assert arr.mmap_size == path.stat().st_size
    assert path.stat().st_size == 64


def test_array_items_roundtrip(tmp_path):
    path = tmp_path / "arr.bin"
    arr = MappedFileArray.create(str(path), 8, 4)
    with arr.item(1) as view:
        view[:] = b"abcdefgh"
    arr.cur_num = 2
    arr.close()

    with MappedFileArray.open(str(path)) as reopened:
        assert bytes(reopened.item(1)) == b"abcdefgh"
        assert bytes(reopened.item(0)) == b"\0" * 8
        assert reopened.cur_num == 2


def test_array_item_out_of_range(tmp_path):
    with MappedFileArray.create(str(tmp_path / "arr.bin"), 8, 4) as arr:
        with pytest.raises(IndexError):
            arr.item(4)
        with pytest.raises(IndexError):
            arr.item(-1)


def test_array_readonly_item_not_writable(tmp_path):
    path = tmp_path / "arr.bin"
    MappedFileArray.create(str(path), 4, 2).close()
    with MappedFileArray.open(str(path)) as arr:
        view = arr.item(0)
        assert view.readonly is True
        with pytest.raises(TypeError):
            view[:] = b"abcd"
        assert bytes(view) == b"\0" * 4
        view.release()


def test_array_open_too_small(tmp_path):
    path = tmp_path / "small.bin"
    path.write_bytes(b"abc")
    with pytest.raises(MmapFileError) as info:
        MappedFileArray.open(str(path))
    assert info.value.code == MmapFileError.MMAP_FAIL


def test_array_create_negative_rejected(tmp_path):
    with pytest.raises(ValueError):
        MappedFileArray.create(str(tmp_path / "arr.bin"), -1, 4)