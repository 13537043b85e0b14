"""Recursive generation copy.

``copy_tree`` reproduces the old generation inside the new one.  Regular
files that already exist in the destination are the database index files
seeded (and then modified) earlier; only their ownership and permissions are
taken from the source.  Everything else is copied byte for byte with
ownership, permissions and timestamps.

Call graph:

    copy_tree
      │
      └─> _copy_dir_contents <────────┐
           │                          │
           ├─> _copy_subdir ──────────┘
           │
           ├─> _copy_file ──> copy_file_contents ──> _transfer
           │
           └─> _copy_link

Every failure raises (see modnss.errors); a partly copied generation is
never promoted.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import mmap
import os
import stat
from dataclasses import dataclass

from modnss.errors import ConsistencyError, FilesystemError
from modnss.handles import DirectoryHandle, entry_type
from modnss.observability import Component, get_logger

log = get_logger("tree", Component.COPIER)

NEW_FILE_MODE = 0o600
NEW_DIR_MODE = 0o700

_FILE_FLAGS = os.O_NOFOLLOW | os.O_CLOEXEC | os.O_NONBLOCK


@dataclass
class CopyStats:
    """Counts of what copy_tree did."""
    files: int = 0
    merged: int = 0
    symlinks: int = 0
    directories: int = 0
    bytes_copied: int = 0

    def to_dict(self) -> dict:
        return {
            "files": self.files,
            "merged": self.merged,
            "symlinks": self.symlinks,
            "directories": self.directories,
            "bytes_copied": self.bytes_copied,
        }


def _transfer(src_fd: int, dest_fd: int, size: int, src_label: str, dest_label: str) -> None:
    """Copy ``size`` bytes through two memory mappings."""
    try:
        smap = mmap.mmap(src_fd, size, flags=mmap.MAP_PRIVATE, prot=mmap.PROT_READ)
    except (OSError, ValueError) as e:
        raise FilesystemError("Failed to map file", src_label, e) from e
    try:
        try:
            dmap = mmap.mmap(
                dest_fd, size, flags=mmap.MAP_SHARED, prot=mmap.PROT_READ | mmap.PROT_WRITE
            )
        except (OSError, ValueError) as e:
            raise FilesystemError("Failed to map file", dest_label, e) from e
        try:
            dmap[:] = smap
        finally:
            dmap.close()
    finally:
        smap.close()


def copy_file_contents(
    src_fd: int,
    dest_fd: int,
    src_st: os.stat_result,
    src_label: str,
    dest_label: str,
) -> int:
    """Copy the contents of one open regular file into another.

    ``src_st`` must be the source's stat taken before the copy started; if
    the source mtime differs afterwards the copy is rejected.  Returns the
    number of bytes copied.
    """
    size = src_st.st_size
    if size < 0:
        raise FilesystemError("File size invalid", src_label)

    # mapping a zero-length region is an error
    if size > 0:
        try:
            os.posix_fallocate(dest_fd, 0, size)
        except OSError as e:
            raise FilesystemError("Failed to allocate file", dest_label, e) from e
        _transfer(src_fd, dest_fd, size, src_label, dest_label)

    try:
        after = os.fstat(src_fd)
    except OSError as e:
        raise FilesystemError("Failed to read file info", src_label, e) from e
    if after.st_mtime_ns != src_st.st_mtime_ns:
        raise ConsistencyError("File changed during copy", src_label)
    return size


def copy_metadata(
    fd: int,
    src_st: os.stat_result,
    label: str,
    copy_timestamps: bool,
) -> None:
    """Apply ownership, permission bits and (optionally) timestamps to an
    open file or directory."""
    try:
        os.fchown(fd, src_st.st_uid, src_st.st_gid)
    except OSError as e:
        raise FilesystemError("Failed to set ownership", label, e) from e

    # after chown, which may clear setuid/setgid bits
    try:
        os.fchmod(fd, stat.S_IMODE(src_st.st_mode))
    except OSError as e:
        raise FilesystemError("Failed to set permissions", label, e) from e

    if copy_timestamps:
        try:
            os.utime(fd, ns=(src_st.st_atime_ns, src_st.st_mtime_ns))
        except OSError as e:
            raise FilesystemError("Failed to set timestamp", label, e) from e


def _open_verified(
    parent: DirectoryHandle,
    name: str,
    flags: int,
    expected: os.stat_result,
) -> int:
    """Open ``name`` and check it is still the object ``expected`` described."""
    label = parent.path_of(name)
    try:
        fd = os.open(name, flags, dir_fd=parent.fd)
    except OSError as e:
        raise FilesystemError("Failed to open file", label, e) from e
    try:
        st = os.fstat(fd)
    except OSError as e:
        os.close(fd)
        raise FilesystemError("Failed to read file info", label, e) from e
    if (
        st.st_dev != expected.st_dev
        or st.st_ino != expected.st_ino
        or stat.S_IFMT(st.st_mode) != stat.S_IFMT(expected.st_mode)
    ):
        os.close(fd)
        raise ConsistencyError("File replaced during copy", label)
    return fd


def _close(fd: int, label: str) -> None:
    try:
        os.close(fd)
    except OSError as e:
        raise FilesystemError("Failed to close file", label, e) from e


def _copy_file(
    src_dir: DirectoryHandle,
    dest_dir: DirectoryHandle,
    name: str,
    src_st: os.stat_result,
    stats: CopyStats,
) -> None:
    src_label = src_dir.path_of(name)
    dest_label = dest_dir.path_of(name)

    src = _open_verified(src_dir, name, os.O_RDONLY | _FILE_FLAGS, src_st)
    try:
        merged = False
        try:
            dest = os.open(
                name,
                os.O_RDWR | os.O_CREAT | os.O_EXCL | os.O_CLOEXEC,
                NEW_FILE_MODE,
                dir_fd=dest_dir.fd,
            )
        except FileExistsError:
            # one of the database index files seeded before the tree copy
            merged = True
            try:
                dest = os.open(name, os.O_WRONLY | _FILE_FLAGS, dir_fd=dest_dir.fd)
            except OSError as e:
                raise FilesystemError("Failed to open file", dest_label, e) from e
        except OSError as e:
            raise FilesystemError("Failed to create file", dest_label, e) from e

        try:
            if merged:
                try:
                    dest_st = os.fstat(dest)
                except OSError as e:
                    raise FilesystemError("Failed to read file info", dest_label, e) from e
                if not stat.S_ISREG(dest_st.st_mode):
                    raise ConsistencyError("Not a regular file", dest_label)
                log.debug("Merging metadata of existing file", path=dest_label)
                stats.merged += 1
            else:
                stats.bytes_copied += copy_file_contents(src, dest, src_st, src_label, dest_label)
                stats.files += 1
            copy_metadata(dest, src_st, dest_label, copy_timestamps=not merged)
        finally:
            _close(dest, dest_label)
    finally:
        _close(src, src_label)


def _copy_link(
    src_dir: DirectoryHandle,
    dest_dir: DirectoryHandle,
    name: str,
    src_st: os.stat_result,
    stats: CopyStats,
) -> None:
    src_label = src_dir.path_of(name)
    dest_label = dest_dir.path_of(name)

    if src_st.st_size <= 0:
        raise FilesystemError("Symbolic link target size invalid", src_label)

    target = src_dir.readlink(name)
    if len(os.fsencode(target)) != src_st.st_size:
        raise ConsistencyError("Symbolic link target changed", src_label)

    dest_dir.symlink(target, name)

    # permission bits of a link are meaningless; ownership and times are not
    try:
        os.chown(name, src_st.st_uid, src_st.st_gid, dir_fd=dest_dir.fd, follow_symlinks=False)
    except OSError as e:
        raise FilesystemError("Failed to set ownership", dest_label, e) from e
    try:
        os.utime(
            name,
            ns=(src_st.st_atime_ns, src_st.st_mtime_ns),
            dir_fd=dest_dir.fd,
            follow_symlinks=False,
        )
    except OSError as e:
        raise FilesystemError("Failed to set timestamp", dest_label, e) from e
    stats.symlinks += 1


def _copy_subdir(
    src_dir: DirectoryHandle,
    dest_dir: DirectoryHandle,
    name: str,
    src_st: os.stat_result,
    stats: CopyStats,
) -> None:
    src_fd = _open_verified(src_dir, name, os.O_RDONLY | os.O_DIRECTORY | _FILE_FLAGS, src_st)
    with DirectoryHandle(src_fd, src_dir.path_of(name)) as src:
        try:
            os.mkdir(name, NEW_DIR_MODE, dir_fd=dest_dir.fd)
        except OSError as e:
            raise FilesystemError("Failed to create directory", dest_dir.path_of(name), e) from e

        with dest_dir.open_dir(name) as dest:
            _copy_dir_contents(src, dest, stats)
            copy_metadata(dest.fd, src_st, dest.label, copy_timestamps=True)
    stats.directories += 1


def _copy_dir_contents(src: DirectoryHandle, dest: DirectoryHandle, stats: CopyStats) -> None:
    for name in src.names():
        st = src.lstat(name)
        kind = entry_type(st)
        log.debug(f"Copying {kind}", path=src.path_of(name))

        if kind == "file":
            _copy_file(src, dest, name, st, stats)
        elif kind == "symlink":
            _copy_link(src, dest, name, st, stats)
        elif kind == "directory":
            _copy_subdir(src, dest, name, st, stats)
        else:
            raise ConsistencyError("Unsupported file type", src.path_of(name))


def copy_tree(src: DirectoryHandle, dest: DirectoryHandle) -> CopyStats:
    """Copy the contents of ``src`` into ``dest``.

    Afterwards ``dest`` itself gets the ownership and permission bits of
    ``src`` (not its timestamps).
    """
    stats = CopyStats()
    _copy_dir_contents(src, dest, stats)
    copy_metadata(dest.fd, src.fstat(), dest.label, copy_timestamps=False)
    log.info(
        f"Copied {src.label} to {dest.label}",
        operation="copy_tree",
        **stats.to_dict(),
    )
    return stats


def delete_tree(parent: DirectoryHandle, name: str) -> int:
    """Remove the directory ``name`` under ``parent`` and everything in it.

    Returns the number of entries removed, not counting ``name`` itself.
    """
    removed = 0
    with parent.open_dir(name) as handle:
        for child in handle.names():
            st = handle.lstat(child)
            if stat.S_ISDIR(st.st_mode):
                removed += delete_tree(handle, child)
            else:
                try:
                    os.unlink(child, dir_fd=handle.fd)
                except OSError as e:
                    raise FilesystemError("Failed to delete file", handle.path_of(child), e) from e
            removed += 1

    try:
        os.rmdir(name, dir_fd=parent.fd)
    except OSError as e:
        raise FilesystemError("Failed to remove directory", parent.path_of(name), e) from e
    return removed
