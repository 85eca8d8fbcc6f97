"""File systems for serving files, optionally without directory listings."""

from __future__ import annotations

import dataclasses
import os
import posixpath
import stat as _stat
from typing import Any, Protocol


class FileSystem(Protocol):
    """Anything that opens files by slash-separated name."""

    def open(self, name: str) -> Any: ...


class _LocalFile:
    """An opened file or directory on the local disk."""

    def __init__(self, path: str):
        self.path = path
        self.info = os.stat(path)
        self.is_dir = _stat.S_ISDIR(self.info.st_mode)
        self._handle = None if self.is_dir else open(path, "rb")
        self._entries: list[os.DirEntry] | None = None
        self._position = 0

    def __enter__(self) -> "_LocalFile":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _require_file(self):
        if self._handle is None:
            raise IsADirectoryError(self.path)
        return self._handle

    def read(self, size: int = -1) -> bytes:
        return self._require_file().read(size)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._require_file().seek(offset, whence)

    def stat(self) -> os.stat_result:
        return self.info

    def readdir(self, count: int) -> list[os.DirEntry]:
        """Return up to count entries, or all remaining when count <= 0."""
        if not self.is_dir:
            raise NotADirectoryError(self.path)
        if self._entries is None:
            with os.scandir(self.path) as it:
                self._entries = sorted(it, key=lambda entry: entry.name)
        remaining = self._entries[self._position:]
        if count > 0:
            remaining = remaining[:count]
        self._position += len(remaining)
        return remaining

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()


@dataclasses.dataclass(frozen=True)
class Directory:
    """A file system rooted at a local directory."""

    root: str

    def open(self, name: str) -> _LocalFile:
        """Open a slash-separated name, never escaping the root."""
        if os.sep != "/" and os.sep in name:
            raise ValueError("invalid character in file path")
        cleaned = posixpath.normpath("/" + name)
        parts = [part for part in cleaned.split("/") if part]
        return _LocalFile(os.path.join(self.root or ".", *parts))


@dataclasses.dataclass
class NeutralizedReaddirFile:
    """Wraps a file so that directory listing always comes back empty."""

    file: Any

    def readdir(self, count: int) -> list:
        """Return no entries whatever the count, disabling directory listing."""
        if isinstance(count, bool) or not isinstance(count, int):
            raise TypeError(f"count must be an int, not {type(count).__name__}")
        hidden: list = []
        return hidden

    def __getattr__(self, name: str) -> Any:
        if name == "file":
            raise AttributeError(name)
        return getattr(self.file, name)


@dataclasses.dataclass(frozen=True)
class OnlyFilesFS:
    """A file system that hides directory contents of the wrapped one."""

    file_system: Any

    def open(self, name: str) -> NeutralizedReaddirFile:
        """Open through the wrapped file system without directory listing."""
        return NeutralizedReaddirFile(self.file_system.open(name))


def dir_fs(root: str, list_directory: bool) -> Directory | OnlyFilesFS:
    """Return a file system for root, listing directories only when asked."""
    fs = Directory(root)
    if list_directory:
        return fs
    return OnlyFilesFS(fs)