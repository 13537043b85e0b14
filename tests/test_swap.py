"""Tests for alias promotion."""
import os

import pytest

from conftest import OLD_GENERATION
from modnss.errors import ConsistencyError, FilesystemError
from modnss.swap import promote

NEW_GENERATION = "alias-20240601120000"


@pytest.fixture
def link_stat(conf_dir):
    (conf_dir / NEW_GENERATION).mkdir()
    return os.lstat(conf_dir / "alias")


def test_alias_points_at_new_generation(conf, conf_dir, link_stat):
    promote(conf, NEW_GENERATION, link_stat)
    assert os.readlink(conf_dir / "alias") == NEW_GENERATION
    assert not os.path.lexists(conf_dir / "alias.new")


def test_ownership_taken_from_old_link(conf, conf_dir, link_stat):
    promote(conf, NEW_GENERATION, link_stat)
    st = os.lstat(conf_dir / "alias")
    assert (st.st_uid, st.st_gid) == (link_stat.st_uid, link_stat.st_gid)


def test_old_generation_untouched(conf, conf_dir, link_stat):
    promote(conf, NEW_GENERATION, link_stat)
    assert (conf_dir / OLD_GENERATION / "readme.txt").read_text() == "hello\n"


def test_custom_names(conf, conf_dir, link_stat):
    os.symlink(OLD_GENERATION, conf_dir / "nssdb")
    promote(conf, NEW_GENERATION, link_stat, alias_name="nssdb", temp_name="nssdb.tmp")
    assert os.readlink(conf_dir / "nssdb") == NEW_GENERATION
    assert os.readlink(conf_dir / "alias") == OLD_GENERATION


def test_leftover_temp_link_is_fatal(conf, conf_dir, link_stat):
    os.symlink("stale", conf_dir / "alias.new")
    with pytest.raises(FilesystemError, match="Failed to create symbolic link"):
        promote(conf, NEW_GENERATION, link_stat)
    assert os.readlink(conf_dir / "alias") == OLD_GENERATION


def test_temp_link_replaced_before_rename(conf, conf_dir, link_stat, monkeypatch):
    real_symlink = os.symlink

    def racing_symlink(target, name, dir_fd=None):
        real_symlink(target, name, dir_fd=dir_fd)
        os.unlink(name, dir_fd=dir_fd)
        real_symlink("elsewhere", name, dir_fd=dir_fd)

    monkeypatch.setattr(os, "symlink", racing_symlink)
    with pytest.raises(ConsistencyError, match="Symbolic link target changed"):
        promote(conf, NEW_GENERATION, link_stat)
    assert os.readlink(conf_dir / "alias") == OLD_GENERATION
