"""Promotion of a new generation.

The alias is replaced by renaming a freshly created symlink on top of it.
rename(2) is atomic, so a reader resolving the alias sees the old
generation or the new one, never a missing link.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os

from modnss.errors import FilesystemError
from modnss.handles import DirectoryHandle
from modnss.observability import Component, get_logger

log = get_logger("swap", Component.SWAP)


def promote(
    conf: DirectoryHandle,
    new_name: str,
    link_stat: os.stat_result,
    alias_name: str = "alias",
    temp_name: str = "alias.new",
) -> None:
    """Point ``alias_name`` at ``new_name``.

    ``link_stat`` is the lstat of the alias captured when the run started;
    its ownership is carried over to the replacement link.
    """
    temp_label = conf.path_of(temp_name)

    conf.symlink(new_name, temp_name)

    try:
        os.chown(
            temp_name,
            link_stat.st_uid,
            link_stat.st_gid,
            dir_fd=conf.fd,
            follow_symlinks=False,
        )
    except OSError as e:
        raise FilesystemError("Failed to set symbolic link ownership", temp_label, e) from e

    try:
        os.rename(temp_name, alias_name, src_dir_fd=conf.fd, dst_dir_fd=conf.fd)
    except OSError as e:
        raise FilesystemError(
            f"Failed to rename symbolic link: {temp_label} to {conf.path_of(alias_name)}",
            cause=e,
        ) from e

    log.info(f"Promoted {conf.path_of(alias_name)} -> {new_name}")
