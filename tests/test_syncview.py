"""Tests for listing file versions in backups (syncview)."""

import os
import re

import pytest

import syncview


@pytest.fixture
def backup_tree(tmp_path):
    """Backups of /home/user/.bashrc: daily-02 is a hard link to daily-01,
    weekly-01 is a different version, monthly-01 lacks the file."""
    backupdir = tmp_path / "backup"
    for name in ("daily-01", "daily-02", "weekly-01", "monthly-01"):
        (backupdir / name / "home" / "user").mkdir(parents=True)
    (backupdir / "lost+found").mkdir()

    first = backupdir / "daily-01" / "home" / "user" / ".bashrc"
    first.write_text("alias ll='ls -l'\n")
    os.utime(first, (1700000000, 1700000000))
    os.link(first, backupdir / "daily-02" / "home" / "user" / ".bashrc")
    older = backupdir / "weekly-01" / "home" / "user" / ".bashrc"
    older.write_text("# empty\n")
    os.utime(older, (1600000000, 1600000000))
    return backupdir


def names(versions):
    return [version.backup for version in versions]


def test_get_generations(backup_tree):
    assert syncview.get_generations(str(backup_tree)) == [
        "daily-01", "daily-02", "monthly-01", "weekly-01"]


def test_find_versions(backup_tree):
    versions = syncview.find_versions("/home/user/.bashrc", "/",
                                      str(backup_tree))

    assert names(versions) == ["daily-01", "daily-02", "weekly-01"]
    assert versions[0].inode == versions[1].inode
    assert versions[2].size == len("# empty\n")


def test_find_unique_versions(backup_tree):
    versions = syncview.find_versions("/home/user/.bashrc", "/",
                                      str(backup_tree), unique=True)

    assert names(versions) == ["daily-01", "weekly-01"]


def test_find_versions_with_exclude(backup_tree):
    versions = syncview.find_versions("/home/user/.bashrc", "/",
                                      str(backup_tree), exclude="^weekly")

    assert names(versions) == ["daily-01", "daily-02"]


def test_find_versions_relative_to_root(backup_tree):
    versions = syncview.find_versions("/home/user/.bashrc", "/home",
                                      str(backup_tree))

    assert versions == []


def test_target_outside_root(backup_tree):
    with pytest.raises(ValueError):
        syncview.find_versions("/etc/passwd", "/home", str(backup_tree))


def test_links(backup_tree, tmp_path):
    linkdir = tmp_path / "links"
    linkdir.mkdir()
    os.symlink("/nonexistent", linkdir / "stale")
    versions = syncview.find_versions("/home/user/.bashrc", "/",
                                      str(backup_tree))

    syncview.make_links(versions,
                        syncview.prepare_link_dir(str(linkdir), ".bashrc"))

    assert sorted(os.listdir(linkdir)) == ["daily-01", "daily-02",
                                           "weekly-01"]
    assert (linkdir / "weekly-01").read_text() == "# empty\n"


def test_temporary_link_dir():
    linkdir = syncview.prepare_link_dir(None, "/home/user/.bashrc")
    try:
        assert os.path.basename(linkdir).startswith(".bashrc-")
        assert os.listdir(linkdir) == []
    finally:
        os.rmdir(linkdir)


def test_format_table(backup_tree):
    versions = syncview.find_versions("/home/user/.bashrc", "/",
                                      str(backup_tree))

    lines = syncview.format_table(versions)

    assert re.split(r"\s{2,}", lines[0]) == ["mod time", "backup", "inode",
                                             "size", "perms", "path"]
    # Newest first, then by generation name
    assert [line.split()[2] for line in lines[1:]] == [
        "daily-02", "daily-01", "weekly-01"]
    assert lines[1].index("daily-02") == lines[0].index("backup")
    assert "-rw" in lines[3]


def test_main_with_config(backup_tree, tmp_path, write_config, capsys):
    source = (tmp_path / "src").resolve()
    source.mkdir()
    config = write_config(SOURCEDIR=str(source), SERVER="local",
                          DESTDIR="/mnt/nas",
                          BACKUPDIR=str(backup_tree))
    linkdir = tmp_path / "links"

    status = syncview.main(["-c", config, "-d", str(linkdir), "-1",
                            str(source / "home" / "user" / ".bashrc")])

    assert status == 0
    out = capsys.readouterr().out
    assert "daily-01" in out
    assert "daily-02" not in out
    assert sorted(os.listdir(linkdir)) == ["daily-01", "weekly-01"]


def test_main_with_symlinked_root(backup_tree, tmp_path):
    source = (tmp_path / "src").resolve()
    source.mkdir()
    root = tmp_path / "root-link"
    root.symlink_to(source)
    linkdir = tmp_path / "links"

    status = syncview.main(["-r", str(root), "-b", str(backup_tree),
                            "-d", str(linkdir),
                            str(root / "home" / "user" / ".bashrc")])

    assert status == 0
    assert sorted(os.listdir(linkdir)) == ["daily-01", "daily-02",
                                           "weekly-01"]


def test_main_without_backup_dir(capsys):
    assert syncview.main(["/home/user/.bashrc"]) == 1
    assert "backup directory is not set" in capsys.readouterr().err


def test_main_missing_config(tmp_path):
    assert syncview.main(["-c", str(tmp_path / "none.py"),
                          "/home/user/.bashrc"]) == 9


def test_invalid_exclude():
    with pytest.raises(SystemExit):
        syncview.main(["-b", "/tmp", "-x", "(", "/home/user/.bashrc"])
