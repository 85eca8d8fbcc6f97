import pytest

from webcontext.fs import Directory, NeutralizedReaddirFile, OnlyFilesFS, dir_fs


class MockFileSystem:
    def __init__(self, opener):
        self.opener = opener

    def open(self, name):
        return self.opener(name)


def test_only_files_fs_open():
    test_file = object()
    fs = OnlyFilesFS(MockFileSystem(lambda name: test_file))
    opened = fs.open("foo")
    assert opened.file is test_file


def test_only_files_fs_open_error():
    test_error = OSError("mock")

    def opener(name):
        raise test_error

    fs = OnlyFilesFS(MockFileSystem(opener))
    with pytest.raises(OSError) as excinfo:
        fs.open("foo")
    assert excinfo.value is test_error


def test_neutralized_readdir():
    assert NeutralizedReaddirFile(None).readdir(0) == []


def test_dir_list_directory():
    assert dir_fs("foo", True) == Directory("foo")


def test_dir_without_listing():
    assert dir_fs("foo", False) == OnlyFilesFS(Directory("foo"))


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "a.txt").write_bytes(b"hello")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "b.txt").write_bytes(b"world")
    (tmp_path / "sub" / "c.txt").write_bytes(b"!")
    return tmp_path


def test_directory_reads_file(tree):
    with Directory(str(tree)).open("/a.txt") as f:
        assert f.read() == b"hello"


def test_directory_cannot_escape_root(tree):
    with Directory(str(tree / "sub")).open("../../b.txt") as f:
        assert f.read() == b"world"


def test_directory_missing_file(tree):
    with pytest.raises(FileNotFoundError):
        Directory(str(tree)).open("missing.txt")


def test_directory_readdir(tree):
    d = Directory(str(tree)).open("sub")
    assert [e.name for e in d.readdir(1)] == ["b.txt"]
    assert [e.name for e in d.readdir(0)] == ["c.txt"]
    assert d.readdir(0) == []


def test_directory_readdir_on_file_fails(tree):
    with Directory(str(tree)).open("a.txt") as f:
        with pytest.raises(NotADirectoryError):
            f.readdir(0)


def test_only_files_hides_listing_but_reads(tree):
    fs = dir_fs(str(tree), False)
    assert fs.open("sub").readdir(0) == []
    wrapped = fs.open("a.txt")
    assert wrapped.read() == b"hello"
    wrapped.close()