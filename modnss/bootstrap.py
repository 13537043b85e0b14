"""Generation directories and database seeding.

A generation is a directory named ``<prefix>YYYYMMDDHHMMSS`` (UTC) beside
the alias symlink.  The names are plain values returned from here and
passed along by the caller.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from modnss.certdb import DatabaseFormat
from modnss.copier import copy_file_contents
from modnss.errors import ConsistencyError, FilesystemError
from modnss.handles import DirectoryHandle
from modnss.observability import Component, get_logger

log = get_logger("bootstrap", Component.BOOTSTRAP)

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
TIMESTAMP_LENGTH = 14

GENERATION_DIR_MODE = 0o750
DATABASE_FILE_MODE = 0o660


@dataclass
class CurrentGeneration:
    """The generation the alias pointed at when the run started."""
    name: str
    link_stat: os.stat_result
    handle: DirectoryHandle


def generation_name(prefix: str = "alias-", now: Optional[datetime] = None) -> str:
    """``prefix`` followed by the UTC wall-clock time as YYYYMMDDHHMMSS."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    if now.year > 9999:
        raise FilesystemError(f"This program is not supported in the year {now.year}")

    stamp = now.strftime(TIMESTAMP_FORMAT)
    if len(stamp) != TIMESTAMP_LENGTH:
        raise FilesystemError(f"Failed to format timestamp ({now.isoformat()})")
    return prefix + stamp


def locate_current_generation(
    conf: DirectoryHandle,
    alias_name: str = "alias",
    prefix: str = "alias-",
) -> CurrentGeneration:
    """Follow the alias symlink to the current generation.

    The alias must be a symlink whose target is a bare name no longer than
    a generation name.
    """
    label = conf.path_of(alias_name)
    link_st = conf.lstat(alias_name)
    if not stat.S_ISLNK(link_st.st_mode):
        raise FilesystemError("Not a symbolic link", label)
    if link_st.st_size > len(prefix) + TIMESTAMP_LENGTH:
        raise FilesystemError("Symbolic link target too long", label)

    target = conf.readlink(alias_name)
    if len(os.fsencode(target)) != link_st.st_size:
        raise ConsistencyError("Symbolic link target changed", label)
    if not target or "/" in target or target in (".", ".."):
        raise FilesystemError(f"Symbolic link target invalid: {label} -> {target}")

    handle = conf.open_dir(target)
    log.info(f"Current generation: {handle.label}")
    return CurrentGeneration(name=target, link_stat=link_st, handle=handle)


def create_generation(
    conf: DirectoryHandle,
    name: str,
    group: int,
    group_writable: bool = False,
) -> DirectoryHandle:
    """Create and open an empty generation directory, group-owned by
    ``group``.  With ``group_writable`` the group may also create files in
    it; the tree copy later replaces the mode with the old generation's.

    An existing directory of the same name (a second run within the same
    second) is an error.
    """
    try:
        os.mkdir(name, GENERATION_DIR_MODE, dir_fd=conf.fd)
    except OSError as e:
        raise FilesystemError("Failed to create directory", conf.path_of(name), e) from e

    handle = conf.open_dir(name)
    try:
        os.fchown(handle.fd, -1, group)
    except OSError as e:
        handle.close()
        raise FilesystemError("Failed to change owner of directory", handle.label, e) from e
    if group_writable:
        try:
            os.fchmod(handle.fd, GENERATION_DIR_MODE | stat.S_IWGRP)
        except OSError as e:
            handle.close()
            raise FilesystemError("Failed to set permissions", handle.label, e) from e

    log.info(f"Created generation: {handle.label}")
    return handle


def _seed_file(old: DirectoryHandle, new: DirectoryHandle, name: str, group: int) -> None:
    src_label = old.path_of(name)
    dest_label = new.path_of(name)

    try:
        src = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_CLOEXEC | os.O_NONBLOCK, dir_fd=old.fd)
    except OSError as e:
        raise FilesystemError("Failed to open file", src_label, e) from e
    try:
        try:
            src_st = os.fstat(src)
        except OSError as e:
            raise FilesystemError("Failed to read file info", src_label, e) from e
        if not stat.S_ISREG(src_st.st_mode):
            raise FilesystemError("Not a regular file", src_label)

        try:
            dest = os.open(
                name,
                os.O_RDWR | os.O_CREAT | os.O_EXCL | os.O_CLOEXEC,
                DATABASE_FILE_MODE,
                dir_fd=new.fd,
            )
        except OSError as e:
            raise FilesystemError("Failed to create file", dest_label, e) from e
        try:
            copy_file_contents(src, dest, src_st, src_label, dest_label)
            try:
                os.fchown(dest, -1, group)
            except OSError as e:
                raise FilesystemError("Failed to change owner of file", dest_label, e) from e
            try:
                os.fchmod(dest, DATABASE_FILE_MODE)
            except OSError as e:
                raise FilesystemError("Failed to set permissions", dest_label, e) from e
            try:
                os.utime(dest, ns=(src_st.st_atime_ns, src_st.st_mtime_ns))
            except OSError as e:
                raise FilesystemError("Failed to set timestamp", dest_label, e) from e
        finally:
            os.close(dest)
    finally:
        os.close(src)

    log.debug("Seeded database file", path=dest_label, size=src_st.st_size)


def seed_database_files(
    old: DirectoryHandle,
    new: DirectoryHandle,
    fmt: DatabaseFormat,
    group: int,
) -> None:
    """Copy the three index files of ``fmt`` from ``old`` into ``new``.

    The copies are mode 0660 and group-owned by ``group`` so that the
    database principal can modify them; the tree copy later restores the
    source ownership and permissions without touching the contents.
    """
    for name in fmt.files:
        _seed_file(old, new, name, group)
    log.info(f"Seeded {fmt.name} database files into {new.label}")
