"""Principal resolution and scoped effective-identity switching.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import pwd
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from modnss.config import ConfigError
from modnss.errors import FilesystemError
from modnss.observability import Component, get_logger

log = get_logger("identity", Component.IDENTITY)


@dataclass(frozen=True)
class Identity:
    """Numeric user/group pair, with the name it was resolved from."""
    uid: int
    gid: int
    name: str = ""

    @classmethod
    def current(cls) -> "Identity":
        """The process's current effective identity."""
        return cls(uid=os.geteuid(), gid=os.getegid())

    def __str__(self) -> str:
        ids = f"{self.uid}/{self.gid}"
        return f"{self.name} ({ids})" if self.name else ids


def resolve_principal(name: str, allow_root: bool = False) -> Identity:
    """Look up a user and its primary group.

    A user or group id of 0 is refused unless ``allow_root`` is set.
    """
    try:
        pw = pwd.getpwnam(name)
    except KeyError:
        raise ConfigError(f"User does not exist: {name}") from None

    if pw.pw_uid == 0 and not allow_root:
        raise ConfigError("NSS user is root but --allow-root not specified")
    if pw.pw_gid == 0 and not allow_root:
        raise ConfigError("NSS group is root but --allow-root not specified")

    log.debug("Resolved principal", user=pw.pw_name, uid=pw.pw_uid, gid=pw.pw_gid)
    return Identity(uid=pw.pw_uid, gid=pw.pw_gid, name=pw.pw_name)


def set_effective_identity(uid: int, gid: int) -> None:
    """Switch effective gid then uid, and check that both took effect."""
    try:
        os.setegid(gid)
    except OSError as e:
        raise FilesystemError(f"Failed to change effective GID to {gid}", cause=e) from e
    try:
        os.seteuid(uid)
    except OSError as e:
        raise FilesystemError(f"Failed to change effective UID to {uid}", cause=e) from e

    if os.geteuid() != uid:
        raise FilesystemError(f"Effective UID not really changed (still {os.geteuid()})")
    if os.getegid() != gid:
        raise FilesystemError(f"Effective GID not really changed (still {os.getegid()})")

    log.debug(f"Effective uid/gid changed to {uid}/{gid}")


def _restore(saved: Identity) -> None:
    # uid first: regaining the group may need the privileged uid back
    try:
        os.seteuid(saved.uid)
    except OSError as e:
        raise FilesystemError(f"Failed to restore effective UID {saved.uid}", cause=e) from e
    try:
        os.setegid(saved.gid)
    except OSError as e:
        raise FilesystemError(f"Failed to restore effective GID {saved.gid}", cause=e) from e

    if os.geteuid() != saved.uid or os.getegid() != saved.gid:
        raise FilesystemError(
            f"Effective identity not restored (now {os.geteuid()}/{os.getegid()})"
        )
    log.debug(f"Effective uid/gid restored to {saved.uid}/{saved.gid}")


@contextmanager
def effective_identity(identity: Identity) -> Iterator[Identity]:
    """Run a block under ``identity``, restoring the previous effective
    identity on every exit path.

    Yields the identity that was saved.  If the switch itself fails half
    way, whatever was changed is put back before the error propagates.
    """
    saved = Identity.current()
    try:
        set_effective_identity(identity.uid, identity.gid)
    except BaseException as e:
        _restore_after(saved, e)
        raise

    try:
        yield saved
    except BaseException as e:
        _restore_after(saved, e)
        raise
    else:
        _restore(saved)


def _restore_after(saved: Identity, error: BaseException) -> None:
    """Restore ``saved`` while ``error`` propagates.  If that fails too, the
    restore failure is raised with ``error`` as its cause, and ``error`` is
    logged so it is not lost."""
    try:
        _restore(saved)
    except FilesystemError as restore_error:
        log.error(f"Identity not restored after failure: {error}")
        raise restore_error from error
