"""
End-to-end tests for the generation swap.

Starting layout (see conftest.conf_dir):

    alias -> alias-20240101000000/
        cert-index   example.com, other.org
        key-index, module-index, readme.txt, current -> readme.txt, sub/file

After a swap at 2024-06-01 12:00:00 UTC the alias must name
alias-20240601120000, whose cert-index holds other.org and the new
example.com certificate, whose other files are exact copies, and the old
generation must be gone.
"""
import os
import stat

import pytest

import modnss.copier as copier
import modnss.orchestrator as orchestrator
from conftest import (
    OLD_GENERATION,
    OLD_MTIME_NS,
    TEST_FORMAT,
    IndexFileDatabase,
    fixed_clock,
    read_index,
)
from modnss.certdb import SQL_FORMAT, CertutilDatabase
from modnss.errors import ConsistencyError, DatabaseError, FilesystemError, InternalError
from modnss.handles import DirectoryHandle
from modnss.identity import Identity
from modnss.orchestrator import GenerationSwap, SwapState

NEW_GENERATION = "alias-20240601120000"


def _swap(conf, certificate, identity, factory, clock=None, subject="example.com"):
    return GenerationSwap(
        conf,
        subject,
        certificate,
        identity,
        TEST_FORMAT,
        factory,
        clock=clock or fixed_clock(),
    )


class TestSuccessfulSwap:
    """A complete run against the reference layout."""

    def test_alias_points_at_new_generation(self, conf, conf_dir, certificate, identity, database_factory):
        result = _swap(conf, certificate, identity, database_factory).run()

        assert result.old_generation == OLD_GENERATION
        assert result.new_generation == NEW_GENERATION
        assert os.readlink(conf_dir / "alias") == NEW_GENERATION

    def test_old_generation_deleted(self, conf, conf_dir, certificate, identity, database_factory):
        _swap(conf, certificate, identity, database_factory).run()
        assert sorted(os.listdir(conf_dir)) == ["alias", NEW_GENERATION]

    def test_database_updated(self, conf, conf_dir, certificate, identity, database_factory):
        result = _swap(conf, certificate, identity, database_factory).run()

        entries = read_index(conf_dir / NEW_GENERATION / "cert-index")
        assert [e["nickname"] for e in entries] == ["other.org", "example.com"]
        assert entries[1]["pem"] == certificate.pem.decode("ascii")
        assert result.removed_certificates == 1
        assert result.not_after == certificate.format_not_after()

    def test_other_subjects_untouched(self, conf, conf_dir, certificate, identity, database_factory):
        _swap(conf, certificate, identity, database_factory).run()
        entries = read_index(conf_dir / NEW_GENERATION / "cert-index")
        assert {"nickname": "other.org", "pem": "other"} in entries

    def test_tree_copied(self, conf, conf_dir, certificate, identity, database_factory):
        old = conf_dir / OLD_GENERATION
        expected = {
            rel: (os.lstat(old / rel), (old / rel).read_bytes())
            for rel in ("readme.txt", "sub/file")
        }
        sub_st = os.stat(old / "sub")

        _swap(conf, certificate, identity, database_factory).run()

        new = conf_dir / NEW_GENERATION
        for rel, (st, data) in expected.items():
            got = os.lstat(new / rel)
            assert (new / rel).read_bytes() == data
            assert stat.S_IMODE(got.st_mode) == stat.S_IMODE(st.st_mode)
            assert (got.st_uid, got.st_gid) == (st.st_uid, st.st_gid)
            assert got.st_mtime_ns == st.st_mtime_ns == OLD_MTIME_NS
        assert os.readlink(new / "current") == "readme.txt"
        assert stat.S_IMODE(os.stat(new / "sub").st_mode) == stat.S_IMODE(sub_st.st_mode)

    def test_index_files_merged_not_overwritten(self, conf, conf_dir, certificate, identity, database_factory):
        old = conf_dir / OLD_GENERATION
        modes = {name: stat.S_IMODE(os.stat(old / name).st_mode) for name in TEST_FORMAT.files}

        result = _swap(conf, certificate, identity, database_factory).run()

        new = conf_dir / NEW_GENERATION
        # written by the database after seeding; the tree copy must keep its time
        assert os.stat(new / "cert-index").st_mtime_ns != OLD_MTIME_NS
        # untouched by the database; seeding copied the time
        assert os.stat(new / "key-index").st_mtime_ns == OLD_MTIME_NS
        assert (new / "key-index").read_bytes() == b"keys"
        for name, mode in modes.items():
            assert stat.S_IMODE(os.stat(new / name).st_mode) == mode
        assert result.copy_stats.merged == 3

    def test_database_opened_as_principal(self, conf, certificate, identity, database_factory):
        _swap(conf, certificate, identity, database_factory).run()
        assert database_factory.created[0].opened_as == identity
        assert Identity.current() == identity

    def test_rerun_is_idempotent(self, conf, conf_dir, certificate, identity, database_factory):
        _swap(conf, certificate, identity, database_factory).run()
        later = fixed_clock(second=1)
        result = _swap(conf, certificate, identity, database_factory, clock=later).run()

        assert result.removed_certificates == 1
        assert os.readlink(conf_dir / "alias") == "alias-20240601120001"
        assert sorted(os.listdir(conf_dir)) == ["alias", "alias-20240601120001"]
        entries = read_index(conf_dir / "alias-20240601120001" / "cert-index")
        assert [e["nickname"] for e in entries].count("example.com") == 1
        assert (conf_dir / "alias-20240601120001" / "readme.txt").read_text() == "hello\n"

    def test_transitions_recorded_in_order(self, conf, certificate, identity, database_factory):
        swap = _swap(conf, certificate, identity, database_factory)
        result = swap.run()

        assert swap.state == SwapState.OLD_DELETED
        assert swap.state.is_terminal()
        assert [t.to_state for t in result.transitions] == [
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
        data = result.to_dict()
        assert data["new_generation"] == NEW_GENERATION
        assert data["transitions"][-1]["to_state"] == "old_deleted"

    def test_alias_always_resolves(self, conf, conf_dir, certificate, identity, database_factory):
        seen = []

        class WatchedSwap(GenerationSwap):
            def advance_to(self, target, reason=""):
                seen.append((target, os.readlink(conf_dir / "alias")))
                super().advance_to(target, reason)

        WatchedSwap(
            conf, "example.com", certificate, identity, TEST_FORMAT, database_factory,
            clock=fixed_clock(),
        ).run()

        for target, link in seen:
            if target in (SwapState.SWAPPED, SwapState.OLD_DELETED):
                assert link == NEW_GENERATION, target
            else:
                assert link == OLD_GENERATION, target


class TestFailedSwap:
    """Failures before promotion leave the alias alone."""

    def test_modified_file_aborts(self, conf, conf_dir, certificate, identity, database_factory, monkeypatch):
        real_transfer = copier._transfer

        def tampering_transfer(src_fd, dest_fd, size, src_label, dest_label):
            real_transfer(src_fd, dest_fd, size, src_label, dest_label)
            if src_label.endswith("readme.txt"):
                st = os.fstat(src_fd)
                os.utime(src_fd, ns=(st.st_atime_ns, st.st_mtime_ns + 1))

        monkeypatch.setattr(copier, "_transfer", tampering_transfer)
        swap = _swap(conf, certificate, identity, database_factory)

        with pytest.raises(ConsistencyError, match="File changed during copy") as exc_info:
            swap.run()

        assert exc_info.value.step == "tree_copied"
        assert swap.state == SwapState.FATAL
        assert os.readlink(conf_dir / "alias") == OLD_GENERATION
        assert (conf_dir / OLD_GENERATION / "readme.txt").read_text() == "hello\n"
        assert not os.path.lexists(conf_dir / "alias.new")
        # the half-built generation is left for the administrator
        assert (conf_dir / NEW_GENERATION).is_dir()

    def test_same_second_collision(self, conf, conf_dir, certificate, identity, database_factory):
        (conf_dir / NEW_GENERATION).mkdir()
        with pytest.raises(FilesystemError, match="Failed to create directory") as exc_info:
            _swap(conf, certificate, identity, database_factory).run()
        assert exc_info.value.step == "new_created"
        assert os.readlink(conf_dir / "alias") == OLD_GENERATION
        assert database_factory.created == []

    def test_missing_alias(self, conf, conf_dir, certificate, identity, database_factory):
        os.unlink(conf_dir / "alias")
        with pytest.raises(FilesystemError) as exc_info:
            _swap(conf, certificate, identity, database_factory).run()
        assert exc_info.value.step == "old_located"
        assert sorted(os.listdir(conf_dir)) == [OLD_GENERATION]

    def test_database_failure(self, conf, conf_dir, certificate, identity):
        class BrokenDatabase(IndexFileDatabase):
            def _insert(self, nickname, certificate):
                raise DatabaseError(f"Failed to add certificate for {nickname}", self.label)

        swap = _swap(conf, certificate, identity, BrokenDatabase)
        with pytest.raises(DatabaseError) as exc_info:
            swap.run()

        assert exc_info.value.step == "db_mutated"
        assert os.readlink(conf_dir / "alias") == OLD_GENERATION
        assert Identity.current() == identity
        entries = read_index(conf_dir / OLD_GENERATION / "cert-index")
        assert [e["nickname"] for e in entries] == ["example.com", "other.org"]

    def test_unexpected_error_is_wrapped(self, conf, certificate, identity):
        def exploding_factory(directory, fmt):
            raise RuntimeError("boom")

        swap = _swap(conf, certificate, identity, exploding_factory)
        with pytest.raises(InternalError) as exc_info:
            swap.run()

        assert exc_info.value.step == "db_open"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert swap.transitions[-1].to_state == SwapState.FATAL
        assert "db_open" in swap.transitions[-1].reason


class TestFailureAfterPromotion:
    """Once the alias is switched the new generation stays live."""

    def test_delete_failure_leaves_new_generation_live(
        self, conf, conf_dir, certificate, identity, database_factory, monkeypatch
    ):
        def failing_delete(parent, name):
            raise FilesystemError("Failed to remove directory", parent.path_of(name))

        monkeypatch.setattr(orchestrator, "delete_tree", failing_delete)
        swap = _swap(conf, certificate, identity, database_factory)

        with pytest.raises(FilesystemError) as exc_info:
            swap.run()

        assert exc_info.value.step == "old_deleted"
        assert os.readlink(conf_dir / "alias") == NEW_GENERATION
        assert (conf_dir / OLD_GENERATION).is_dir()


class TestStateMachine:
    """Transition rules."""

    def test_cannot_skip_states(self, conf, certificate, identity, database_factory):
        swap = _swap(conf, certificate, identity, database_factory)
        with pytest.raises(InternalError, match="Invalid state transition"):
            swap.advance_to(SwapState.SWAPPED)
        assert swap.state == SwapState.START

    def test_fatal_reachable_from_any_non_terminal_state(self):
        for state, targets in GenerationSwap.VALID_TRANSITIONS.items():
            if state.is_terminal():
                assert targets == set()
            else:
                assert SwapState.FATAL in targets

    def test_run_only_once(self, conf, certificate, identity, database_factory):
        swap = _swap(conf, certificate, identity, database_factory)
        swap.run()
        with pytest.raises(InternalError, match="already run"):
            swap.run()


@pytest.mark.root
def test_swap_as_unprivileged_principal(tmp_path, nss_tools, nobody, private_cwd, certificate):
    conf_dir = tmp_path / "conf"
    old = conf_dir / OLD_GENERATION
    old.mkdir(parents=True)
    (old / "cert9.db").write_text("example.com\nother.org\n")
    (old / "key4.db").write_bytes(b"keys")
    (old / "pkcs11.txt").write_text("library=\n")
    (old / "readme.txt").write_text("hello\n")
    os.chmod(old / "cert9.db", 0o644)
    os.chmod(old / "key4.db", 0o600)
    os.chmod(old, 0o755)
    os.symlink(OLD_GENERATION, conf_dir / "alias")
    before = {name: os.lstat(old / name) for name in os.listdir(old)}
    old_root = os.stat(old)

    def factory(directory, fmt):
        return CertutilDatabase(directory, fmt, certutil=nss_tools.certutil, modutil=nss_tools.modutil)

    with DirectoryHandle.open_path(str(conf_dir)) as conf:
        result = GenerationSwap(
            conf, "example.com", certificate, nobody, SQL_FORMAT, factory, clock=fixed_clock(),
        ).run()

    new = conf_dir / NEW_GENERATION
    assert result.removed_certificates == 1
    assert os.readlink(conf_dir / "alias") == NEW_GENERATION
    assert (new / "cert9.db").read_text() == "other.org\nexample.com\n"
    assert sorted(os.listdir(new)) == sorted(before)
    for name, st in before.items():
        got = os.lstat(new / name)
        assert (got.st_uid, got.st_gid) == (st.st_uid, st.st_gid), name
        assert stat.S_IMODE(got.st_mode) == stat.S_IMODE(st.st_mode), name
    root_st = os.stat(new)
    assert (root_st.st_uid, root_st.st_gid) == (old_root.st_uid, old_root.st_gid)
    assert stat.S_IMODE(root_st.st_mode) == stat.S_IMODE(old_root.st_mode)
    assert Identity.current() == Identity(0, 0)
    assert os.getcwd() == str(private_cwd)
