"""Error taxonomy for the generation swap.

Every error raised below is fatal for the migration.  Nothing in the package
catches these to retry or repair; they propagate to the single top-level
handler in ``modnss.cli``, which logs one diagnostic and exits non-zero.

    MigrationError
    ├── FilesystemError     missing/wrong objects, permission denials
    ├── ConsistencyError    concurrent mutation, unsupported entry types
    ├── DatabaseError       certificate database open/mutate/close
    │   └── CertificateError    unreadable or unparsable certificate
    └── InternalError       broken invariants (should be unreachable)

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Optional


class MigrationError(Exception):
    """Base class for fatal migration errors.

    ``path`` is the diagnostic label of the object involved, ``cause`` the
    underlying exception (usually an ``OSError``).  ``step`` is filled in by
    the orchestrator with the state it was trying to reach.
    """

    def __init__(
        self,
        message: str,
        path: str = "",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = path
        self.cause = cause
        self.step: str = ""

    def __str__(self) -> str:
        parts = [self.message]
        if self.path:
            parts.append(self.path)
        if self.cause is not None:
            detail = getattr(self.cause, "strerror", None) or str(self.cause)
            if detail:
                parts.append(detail)
        return ": ".join(parts)


class FilesystemError(MigrationError):
    """A filesystem operation failed or found the wrong kind of object."""
    pass


class ConsistencyError(MigrationError):
    """Concurrent modification detected, or an unsupported tree entry."""
    pass


class DatabaseError(MigrationError):
    """The certificate database could not be opened, changed or closed."""
    pass


class CertificateError(DatabaseError):
    """The new certificate could not be read or parsed."""
    pass


class InternalError(MigrationError):
    """An internal invariant was violated."""
    pass
