"""Certificate database adapter.

The swap treats the database as three opaque index files plus four
operations: open, list/delete entries by nickname, insert, close.
``CertificateDatabase`` is that interface; ``CertutilDatabase`` implements
it for NSS databases by driving the NSS command line tools.

Entries are keyed by *nickname*, which is the subject (hostname) the
certificate was issued for.  ``replace_certificate`` removes every entry
with the subject's nickname and inserts the new certificate, so running it
twice leaves exactly one entry.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from modnss.certificate import CertificateInfo
from modnss.errors import DatabaseError
from modnss.handles import DirectoryHandle
from modnss.observability import Component, get_logger

log = get_logger("certdb", Component.DATABASE)


@dataclass(frozen=True)
class DatabaseFormat:
    """The three index files that make up one database, and how the NSS
    tools address a directory holding them.

    A ``journaled`` database writes side files (an SQLite journal) next to
    its index files, so its directory must be writable by the principal.
    """
    name: str
    files: Tuple[str, str, str]
    prefix: str
    journaled: bool = False

    def __post_init__(self) -> None:
        if len(self.files) != 3 or len(set(self.files)) != 3:
            raise ValueError("a database format names exactly three distinct files")
        for f in self.files:
            if not f or "/" in f or f in (".", ".."):
                raise ValueError(f"invalid index file name: {f!r}")


DBM_FORMAT = DatabaseFormat("dbm", ("cert8.db", "key3.db", "secmod.db"), "dbm:")
SQL_FORMAT = DatabaseFormat("sql", ("cert9.db", "key4.db", "pkcs11.txt"), "sql:", journaled=True)

DATABASE_FORMATS: Dict[str, DatabaseFormat] = {
    DBM_FORMAT.name: DBM_FORMAT,
    SQL_FORMAT.name: SQL_FORMAT,
}


def database_format(name: str) -> DatabaseFormat:
    try:
        return DATABASE_FORMATS[name]
    except KeyError:
        raise ValueError(f"unknown database format: {name}") from None


class CertificateDatabase(ABC):
    """An open certificate database living in one generation directory."""

    def __init__(self, directory: DirectoryHandle, fmt: DatabaseFormat):
        self.directory = directory
        self.format = fmt
        self._open = False

    @property
    def label(self) -> str:
        return self.directory.label

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if self._open:
            raise DatabaseError("Database already open", self.label)
        self._open_database()
        self._open = True

    def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._close_database()

    def _require_open(self) -> None:
        if not self._open:
            raise DatabaseError("Database not open", self.label)

    def nicknames(self) -> List[str]:
        """Nicknames of all stored certificates, one per certificate."""
        self._require_open()
        return self._list_nicknames()

    def delete(self, nickname: str) -> None:
        """Delete one certificate stored under ``nickname``."""
        self._require_open()
        self._delete(nickname)

    def insert(self, nickname: str, certificate: CertificateInfo) -> None:
        self._require_open()
        self._insert(nickname, certificate)

    @abstractmethod
    def _open_database(self) -> None:
        ...

    @abstractmethod
    def _close_database(self) -> None:
        ...

    @abstractmethod
    def _list_nicknames(self) -> List[str]:
        ...

    @abstractmethod
    def _delete(self, nickname: str) -> None:
        ...

    @abstractmethod
    def _insert(self, nickname: str, certificate: CertificateInfo) -> None:
        ...

    def __enter__(self) -> "CertificateDatabase":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def replace_certificate(
    db: CertificateDatabase,
    subject: str,
    certificate: CertificateInfo,
) -> int:
    """Remove every certificate stored as ``subject``, then insert
    ``certificate`` under that nickname.

    Returns the number of certificates removed (0 on first issuance).
    """
    log.info(f"Deleting existing certificates for {subject} from NSS database: {db.label}")

    deleted = 0
    for nickname in db.nicknames():
        if nickname != subject:
            log.debug(f"  {nickname}: ignoring")
            continue
        log.debug(f"  {nickname}: DELETING")
        db.delete(nickname)
        deleted += 1

    log.info(f"Deleted {deleted} existing certificate(s)")

    db.insert(subject, certificate)
    log.notice(f"Updated mod_nss certificate for {subject}")
    log.notice(f"New certificate valid until {certificate.format_not_after()}")
    return deleted


# certutil -L prints "<nickname><padding><trust>" with trust like "u,u,u"
_LIST_LINE_RE = re.compile(r"^(?P<nickname>.*?)\s+(?P<trust>[A-Za-z]*,[A-Za-z]*,[A-Za-z]*)\s*$")
_LOGIN_TYPE_RE = re.compile(r"^\s*Login Type:\s*(?P<value>.+?)\s*$", re.MULTILINE)
_PUBLIC_LOGIN = "Public (no pin required)"

INTERNAL_MODULE = "NSS Internal PKCS #11 Module"


class CertutilDatabase(CertificateDatabase):
    """NSS database manipulated through ``certutil`` and ``modutil``.

    The tools are given the database as ``<prefix>.`` and run with the
    generation directory as their working directory: each child process
    ``fchdir``s into the directory handle before exec.  The working directory
    of this process is never changed, so it need not be reachable by the
    database principal.
    """

    def __init__(
        self,
        directory: DirectoryHandle,
        fmt: DatabaseFormat,
        certutil: str = "certutil",
        modutil: str = "modutil",
        trust_flags: str = ",,",
    ):
        super().__init__(directory, fmt)
        self.certutil = certutil
        self.modutil = modutil
        self.trust_flags = trust_flags

    @property
    def db_arg(self) -> str:
        return f"{self.format.prefix}."

    def _enter_directory(self) -> None:
        # runs in the child between fork and exec
        os.fchdir(self.directory.fd)

    def _run(
        self,
        argv: Sequence[str],
        what: str,
        stdin: Optional[bytes] = None,
    ) -> str:
        log.debug("Running " + " ".join(argv))
        kwargs: Dict[str, object] = {"input": stdin} if stdin is not None else {"stdin": subprocess.DEVNULL}
        try:
            proc = subprocess.run(
                list(argv),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
                preexec_fn=self._enter_directory,
                **kwargs,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise DatabaseError(f"{what}: cannot run {argv[0]}", self.label, e) from e

        if proc.returncode != 0:
            detail = proc.stderr.decode("utf-8", "replace").strip() or f"exit status {proc.returncode}"
            raise DatabaseError(f"{what}: {detail}", self.label)
        return proc.stdout.decode("utf-8", "replace")

    def _open_database(self) -> None:
        self._require_public_login()

    def _require_public_login(self) -> None:
        out = self._run(
            [self.modutil, "-list", INTERNAL_MODULE, "-dbdir", self.db_arg, "-force"],
            "Failed to open NSS database",
        )
        logins = [m.group("value") for m in _LOGIN_TYPE_RE.finditer(out)]
        if not logins:
            raise DatabaseError("Failed to read NSS database slot information", self.label)
        if any(v != _PUBLIC_LOGIN for v in logins):
            raise DatabaseError("NSS database requires authentication", self.label)

    def _close_database(self) -> None:
        for name in self.format.files:
            label = self.directory.path_of(name)
            try:
                fd = os.open(name, os.O_RDONLY | os.O_NOFOLLOW | os.O_CLOEXEC, dir_fd=self.directory.fd)
            except OSError as e:
                raise DatabaseError("Failed to open database file", label, e) from e
            try:
                os.fsync(fd)
            except OSError as e:
                raise DatabaseError("Failed to flush database file", label, e) from e
            finally:
                os.close(fd)

    def _list_nicknames(self) -> List[str]:
        out = self._run(
            [self.certutil, "-L", "-d", self.db_arg],
            "Failed to read certificates from NSS database",
        )
        return parse_certutil_listing(out)

    def _delete(self, nickname: str) -> None:
        self._run(
            [self.certutil, "-D", "-d", self.db_arg, "-n", nickname],
            f"Failed to delete certificate for {nickname}",
        )

    def _insert(self, nickname: str, certificate: CertificateInfo) -> None:
        self._run(
            [self.certutil, "-A", "-d", self.db_arg, "-n", nickname, "-t", self.trust_flags, "-a"],
            f"Failed to add certificate for {nickname}",
            stdin=certificate.pem,
        )


def parse_certutil_listing(output: str) -> List[str]:
    """Nicknames from ``certutil -L`` output, skipping the two header lines."""
    names: List[str] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        if line.startswith("Certificate Nickname") or line.lstrip().startswith("SSL,S/MIME"):
            continue
        m = _LIST_LINE_RE.match(line)
        if m and m.group("nickname"):
            names.append(m.group("nickname"))
    return names
