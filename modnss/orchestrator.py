"""
Generation swap state machine.

    START ──▶ OLD_LOCATED ──▶ NEW_CREATED ──▶ SEED_COPIED ──▶ DB_OPEN
                                                                │
      OLD_DELETED ◀── SWAPPED ◀── TREE_COPIED ◀── DB_CLOSED ◀── DB_MUTATED

    any state ──▶ FATAL

Before SWAPPED a failure leaves the old generation current and untouched
(the half-built new generation is left behind).  After SWAPPED the new
generation is live and is never rolled back; a failure while deleting the
old generation leaves it orphaned.  A failed swap is never resumed: the
next run starts again from whatever the alias names.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from modnss.bootstrap import (
    create_generation,
    generation_name,
    locate_current_generation,
    seed_database_files,
)
from modnss.certdb import CertificateDatabase, DatabaseFormat, replace_certificate
from modnss.certificate import CertificateInfo
from modnss.copier import CopyStats, copy_tree, delete_tree
from modnss.errors import InternalError, MigrationError
from modnss.handles import DirectoryHandle
from modnss.identity import Identity, effective_identity
from modnss.observability import Component, get_logger, timed_operation
from modnss.swap import promote

log = get_logger("orchestrator", Component.ORCHESTRATOR)

DatabaseFactory = Callable[[DirectoryHandle, DatabaseFormat], CertificateDatabase]


class SwapState(Enum):
    """States of one generation swap."""
    START = "start"
    OLD_LOCATED = "old_located"
    NEW_CREATED = "new_created"
    SEED_COPIED = "seed_copied"
    DB_OPEN = "db_open"
    DB_MUTATED = "db_mutated"
    DB_CLOSED = "db_closed"
    TREE_COPIED = "tree_copied"
    SWAPPED = "swapped"
    OLD_DELETED = "old_deleted"

    FATAL = "fatal"

    def is_terminal(self) -> bool:
        return self in (SwapState.OLD_DELETED, SwapState.FATAL)

    def is_promoted(self) -> bool:
        return self in (SwapState.SWAPPED, SwapState.OLD_DELETED)


_FORWARD = [
    SwapState.START,
    SwapState.OLD_LOCATED,
    SwapState.NEW_CREATED,
    SwapState.SEED_COPIED,
    SwapState.DB_OPEN,
    SwapState.DB_MUTATED,
    SwapState.DB_CLOSED,
    SwapState.TREE_COPIED,
    SwapState.SWAPPED,
    SwapState.OLD_DELETED,
]


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: Optional[SwapState]
    to_state: SwapState
    timestamp: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass
class SwapResult:
    """Outcome of a successful swap."""
    subject: str
    old_generation: str
    new_generation: str
    removed_certificates: int
    not_after: str
    copy_stats: CopyStats
    transitions: List[StateTransition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "old_generation": self.old_generation,
            "new_generation": self.new_generation,
            "removed_certificates": self.removed_certificates,
            "not_after": self.not_after,
            "copy_stats": self.copy_stats.to_dict(),
            "transitions": [t.to_dict() for t in self.transitions],
        }


class GenerationSwap:
    """
    Replace the certificate for one subject by building and promoting a new
    generation of the database directory.

    Example:
        with DirectoryHandle.open_path("/etc/httpd") as conf:
            swap = GenerationSwap(conf, "www.example.com", cert, identity,
                                  DBM_FORMAT, database_factory)
            result = swap.run()
    """

    VALID_TRANSITIONS: Dict[SwapState, Set[SwapState]] = {
        state: {nxt, SwapState.FATAL} for state, nxt in zip(_FORWARD, _FORWARD[1:])
    }
    VALID_TRANSITIONS[SwapState.OLD_DELETED] = set()
    VALID_TRANSITIONS[SwapState.FATAL] = set()

    def __init__(
        self,
        conf: DirectoryHandle,
        subject: str,
        certificate: CertificateInfo,
        identity: Identity,
        fmt: DatabaseFormat,
        database_factory: DatabaseFactory,
        alias_name: str = "alias",
        temp_link_name: str = "alias.new",
        generation_prefix: str = "alias-",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.conf = conf
        self.subject = subject
        self.certificate = certificate
        self.identity = identity
        self.format = fmt
        self.database_factory = database_factory
        self.alias_name = alias_name
        self.temp_link_name = temp_link_name
        self.generation_prefix = generation_prefix
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._state = SwapState.START
        self._attempting: Optional[SwapState] = None
        self.transitions: List[StateTransition] = []
        self._record_transition(None, SwapState.START, "Swap initiated")

        self.old_generation = ""
        self.new_generation = ""

    @property
    def state(self) -> SwapState:
        return self._state

    def _record_transition(
        self,
        from_state: Optional[SwapState],
        to_state: SwapState,
        reason: str,
    ) -> None:
        self.transitions.append(StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason,
        ))

    def can_transition_to(self, target: SwapState) -> bool:
        return target in self.VALID_TRANSITIONS.get(self._state, set())

    def advance_to(self, target: SwapState, reason: str = "") -> None:
        """Move to ``target``; only the next forward state or FATAL is allowed."""
        if not self.can_transition_to(target):
            raise InternalError(
                f"Invalid state transition: {self._state.value} -> {target.value}"
            )
        previous, self._state = self._state, target
        self._record_transition(previous, target, reason)
        log.debug(f"{previous.value} -> {target.value}: {reason}")

    def _begin(self, target: SwapState) -> None:
        self._attempting = target

    def _fail(self, error: MigrationError) -> None:
        error.step = self._attempting.value if self._attempting else self._state.value
        promoted = self._state.is_promoted()
        self.advance_to(SwapState.FATAL, f"{error.step}: {error}")

        if promoted:
            log.warning(
                f"New generation {self.new_generation} is live; "
                f"old generation {self.old_generation} was not removed"
            )
        elif self.new_generation:
            log.warning(
                f"Alias unchanged; leaving incomplete generation {self.new_generation}"
            )

    @timed_operation(log, "generation_swap")
    def run(self) -> SwapResult:
        """Run every step in order.

        Raises a MigrationError (with ``step`` set) on the first failure,
        after moving to FATAL.
        """
        if self._state is not SwapState.START:
            raise InternalError(f"Swap already run (state {self._state.value})")

        old: Optional[DirectoryHandle] = None
        new: Optional[DirectoryHandle] = None
        try:
            self._begin(SwapState.OLD_LOCATED)
            current = locate_current_generation(self.conf, self.alias_name, self.generation_prefix)
            old = current.handle
            self.old_generation = current.name
            self.advance_to(SwapState.OLD_LOCATED, current.name)

            self._begin(SwapState.NEW_CREATED)
            name = generation_name(self.generation_prefix, self.clock())
            new = create_generation(self.conf, name, self.identity.gid, self.format.journaled)
            self.new_generation = name
            self.advance_to(SwapState.NEW_CREATED, name)

            self._begin(SwapState.SEED_COPIED)
            seed_database_files(old, new, self.format, self.identity.gid)
            self.advance_to(SwapState.SEED_COPIED, ", ".join(self.format.files))

            removed = self._update_database(new)

            self._begin(SwapState.TREE_COPIED)
            stats = copy_tree(old, new)
            self.advance_to(SwapState.TREE_COPIED, f"{stats.files} files copied")

            self._begin(SwapState.SWAPPED)
            promote(
                self.conf,
                self.new_generation,
                current.link_stat,
                self.alias_name,
                self.temp_link_name,
            )
            self.advance_to(SwapState.SWAPPED, f"{self.alias_name} -> {self.new_generation}")

            self._begin(SwapState.OLD_DELETED)
            old.close()
            deleted = delete_tree(self.conf, self.old_generation)
            self.advance_to(SwapState.OLD_DELETED, f"{deleted} entries removed")

        except MigrationError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = InternalError("Unexpected error", cause=e)
            self._fail(error)
            raise error from e
        finally:
            for handle in (new, old):
                if handle is not None and not handle.closed:
                    handle.close()

        return SwapResult(
            subject=self.subject,
            old_generation=self.old_generation,
            new_generation=self.new_generation,
            removed_certificates=removed,
            not_after=self.certificate.format_not_after(),
            copy_stats=stats,
            transitions=list(self.transitions),
        )

    def _update_database(self, new: DirectoryHandle) -> int:
        """Open, change and close the database as the database principal."""
        with effective_identity(self.identity):
            self._begin(SwapState.DB_OPEN)
            db = self.database_factory(new, self.format)
            db.open()
            self.advance_to(SwapState.DB_OPEN, new.label)

            try:
                self._begin(SwapState.DB_MUTATED)
                removed = replace_certificate(db, self.subject, self.certificate)
                self.advance_to(SwapState.DB_MUTATED, f"{removed} removed, 1 inserted")
            except BaseException:
                db.close()
                raise

            self._begin(SwapState.DB_CLOSED)
            db.close()
            self.advance_to(SwapState.DB_CLOSED, new.label)
        return removed
