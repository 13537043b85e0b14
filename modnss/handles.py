"""Directory handles.

A DirectoryHandle is an open directory descriptor plus the label used in
diagnostics.  Once a directory is open, everything beneath it is reached
through ``dir_fd=`` relative calls, so renaming or replacing an ancestor
cannot redirect an operation into another tree.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import stat
from typing import List, Optional

from modnss.errors import ConsistencyError, FilesystemError, InternalError

DIR_FLAGS = os.O_RDONLY | os.O_DIRECTORY | os.O_NOFOLLOW | os.O_CLOEXEC


def join_label(base: str, name: str) -> str:
    return f"{base}/{name}" if base else name


class DirectoryHandle:
    """An open directory.

    ``label`` is only ever used to build messages; it is never passed back
    to the operating system.
    """

    def __init__(self, fd: int, label: str):
        self._fd: Optional[int] = fd
        self.label = label

    @classmethod
    def open_path(cls, path: str) -> "DirectoryHandle":
        """Open a top-level directory by path (symlinks are followed)."""
        try:
            fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC)
        except OSError as e:
            raise FilesystemError("Failed to open directory", path, e) from e
        return cls(fd, path.rstrip("/") or "/")

    @property
    def fd(self) -> int:
        if self._fd is None:
            raise InternalError("Directory handle used after close", self.label)
        return self._fd

    @property
    def closed(self) -> bool:
        return self._fd is None

    def path_of(self, name: str) -> str:
        return join_label(self.label, name)

    def open_dir(self, name: str) -> "DirectoryHandle":
        """Open a subdirectory without following a symlink in its place."""
        try:
            fd = os.open(name, DIR_FLAGS, dir_fd=self.fd)
        except OSError as e:
            raise FilesystemError("Failed to open directory", self.path_of(name), e) from e
        return DirectoryHandle(fd, self.path_of(name))

    def lstat(self, name: str) -> os.stat_result:
        try:
            return os.stat(name, dir_fd=self.fd, follow_symlinks=False)
        except OSError as e:
            raise FilesystemError("Failed to read file info", self.path_of(name), e) from e

    def fstat(self) -> os.stat_result:
        try:
            return os.fstat(self.fd)
        except OSError as e:
            raise FilesystemError("Failed to read directory info", self.label, e) from e

    def names(self) -> List[str]:
        """Entry names, excluding ``.`` and ``..``.

        The listing uses its own duplicate of the descriptor so the handle's
        offset is never shared with a directory stream.
        """
        try:
            dup = os.dup(self.fd)
        except OSError as e:
            raise FilesystemError("Failed to duplicate directory handle", self.label, e) from e
        try:
            with os.scandir(dup) as it:
                return sorted(entry.name for entry in it)
        except OSError as e:
            raise FilesystemError("Failed to read directory", self.label, e) from e
        finally:
            os.close(dup)

    def readlink(self, name: str) -> str:
        try:
            return os.readlink(name, dir_fd=self.fd)
        except OSError as e:
            raise FilesystemError("Failed to read symbolic link target", self.path_of(name), e) from e

    def symlink(self, target: str, name: str) -> os.stat_result:
        """Create a symlink and read it back.

        Returns the new link's lstat.  Raises ConsistencyError if what is
        found at ``name`` afterwards is not a link to exactly ``target``.
        """
        label = self.path_of(name)
        try:
            os.symlink(target, name, dir_fd=self.fd)
        except OSError as e:
            raise FilesystemError("Failed to create symbolic link", label, e) from e

        st = self.lstat(name)
        if not stat.S_ISLNK(st.st_mode):
            raise ConsistencyError("Not a symbolic link", label)
        if st.st_size != len(os.fsencode(target)):
            raise ConsistencyError("Symbolic link target changed", label)
        if self.readlink(name) != target:
            raise ConsistencyError("Symbolic link target changed", label)
        return st

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError as e:
            raise FilesystemError("Failed to close directory", self.label, e) from e

    def __enter__(self) -> "DirectoryHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"fd={self._fd}"
        return f"DirectoryHandle({self.label!r}, {state})"


def entry_type(st: os.stat_result) -> str:
    """Short type name for messages."""
    mode = st.st_mode
    if stat.S_ISREG(mode):
        return "file"
    if stat.S_ISLNK(mode):
        return "symlink"
    if stat.S_ISDIR(mode):
        return "directory"
    return "other"

